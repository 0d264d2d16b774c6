"""
脚本执行沙箱

把技能随包脚本作为独立外部进程运行，绝不在进程内加载:
- 最小化环境变量，只传入 PATH/语言设置和调用方显式给出的 inputs["env"]
- 临时工作目录，独立进程组
- 输入以 JSON 写入 stdin，参数取自 inputs["args"]
- 超时杀死整个进程组，结果标记 timed_out
- 输出超过上限时截断并标记 truncated（不是错误）
- 非零退出码只体现在 ExecutionResult 中，由调用方决定是否视为失败
"""

import asyncio
import json
import logging
import os
import shutil
import signal
import sys
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from ..errors import InvocationTimeoutError, ScriptExecutionError

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024

# 进程被杀死后等待回收的时间
_REAP_TIMEOUT = 5.0


@dataclass(frozen=True)
class ExecutionResult:
    """脚本执行结果"""

    script: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: int = 0
    truncated: bool = False
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def raise_for_status(self, skill_name: Optional[str] = None) -> None:
        """
        Raises:
            InvocationTimeoutError: 执行超时
            ScriptExecutionError: 非零退出
        """
        if self.timed_out:
            raise InvocationTimeoutError(
                f"Script {Path(self.script).name} timed out after {self.elapsed_ms}ms",
                skill_name=skill_name,
                details={"elapsed_ms": self.elapsed_ms},
            )
        if self.exit_code != 0:
            raise ScriptExecutionError(
                f"Script {Path(self.script).name} exited with code {self.exit_code}",
                result=self,
                skill_name=skill_name,
            )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class _CappedBuffer:
    """累积输出，超过上限的部分丢弃"""

    def __init__(self, cap: int):
        self.cap = cap
        self.data = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        room = self.cap - len(self.data)
        if room > 0:
            self.data.extend(chunk[:room])
        if len(chunk) > room:
            self.truncated = True

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


def build_command(script_path: Path, args: list[str] | None = None) -> list[str]:
    """根据脚本后缀确定解释器"""
    args = [str(a) for a in (args or [])]
    suffix = script_path.suffix.lower()

    if suffix == ".py":
        return [sys.executable, str(script_path)] + args
    if suffix in (".sh", ".bash"):
        bash_path = shutil.which("bash")
        if not bash_path:
            raise FileNotFoundError(f"Cannot run {script_path.name}: 'bash' not found")
        return [bash_path, str(script_path)] + args
    if suffix == ".js":
        node_path = shutil.which("node")
        if not node_path:
            raise FileNotFoundError(f"Cannot run {script_path.name}: 'node' not found")
        return [node_path, str(script_path)] + args
    # 其他情况直接运行（需要可执行权限）
    return [str(script_path)] + args


class ScriptSandbox:
    """
    脚本执行沙箱

    run() 可以被任意多个调用并发使用，每次执行是独立的进程。
    """

    def __init__(self, output_cap_bytes: int = 64 * 1024, default_timeout: float = 30.0):
        if output_cap_bytes <= 0:
            raise ValueError("output_cap_bytes must be positive")
        self.output_cap_bytes = output_cap_bytes
        self.default_timeout = default_timeout

    def build_env(self, script_path: Path, workdir: Path, inputs: dict[str, Any]) -> dict[str, str]:
        """构造子进程环境变量（不继承宿主环境）"""
        env = {
            "PATH": os.environ.get("PATH", os.defpath),
            "LANG": os.environ.get("LANG", "C.UTF-8"),
            "HOME": str(workdir),
            "TMPDIR": str(workdir),
            # Windows 上 Python 子进程默认使用 GBK 编码
            "PYTHONUTF8": "1",
            "PYTHONIOENCODING": "utf-8",
            "SKILL_DIR": str(script_path.parent.parent if script_path.parent.name == "scripts" else script_path.parent),
        }
        if os.name == "nt" and "SYSTEMROOT" in os.environ:
            env["SYSTEMROOT"] = os.environ["SYSTEMROOT"]
        extra = inputs.get("env") or {}
        env.update({str(k): str(v) for k, v in extra.items()})
        return env

    async def run(
        self,
        script_path: Path,
        inputs: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """
        执行脚本

        Args:
            script_path: 脚本路径
            inputs: 传给脚本的输入；"args" 作为命令行参数，"env" 作为额外环境变量，
                    整个 inputs 以 JSON 写入 stdin
            timeout: 超时时间（秒），None 使用默认值

        Returns:
            ExecutionResult（超时、非零退出都体现在结果里，不抛出）
        """
        script_path = Path(script_path)
        inputs = dict(inputs or {})
        timeout = self.default_timeout if timeout is None else timeout

        if timeout <= 0:
            logger.warning(f"No time left to run {script_path.name}")
            return ExecutionResult(
                script=str(script_path),
                exit_code=-1,
                stderr="Deadline expired before the script started",
                timed_out=True,
            )

        command = build_command(script_path, inputs.get("args"))
        payload = json.dumps(inputs, ensure_ascii=False, default=str).encode("utf-8")
        stdout = _CappedBuffer(self.output_cap_bytes)
        stderr = _CappedBuffer(self.output_cap_bytes)

        logger.info(f"Executing script: {script_path.name} (timeout={timeout:.1f}s)")
        start = time.monotonic()

        with tempfile.TemporaryDirectory(prefix="skillhost-") as tmp:
            workdir = Path(tmp)
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                env=self.build_env(script_path, workdir, inputs),
                start_new_session=os.name != "nt",
            )

            timed_out = False
            try:
                await asyncio.wait_for(
                    asyncio.gather(
                        self._feed_stdin(process, payload),
                        self._drain(process.stdout, stdout),
                        self._drain(process.stderr, stderr),
                    ),
                    timeout=timeout,
                )
                await process.wait()
            except TimeoutError:
                timed_out = True
                logger.error(f"Script {script_path.name} timed out after {timeout}s, killing")
                await self._kill(process)
            except asyncio.CancelledError:
                logger.info(f"Script {script_path.name} cancelled, killing")
                await self._kill(process)
                raise

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if timed_out:
            message = f"Script timed out after {timeout} seconds"
            err_text = f"{stderr.text()}\n{message}" if stderr.data else message
            return ExecutionResult(
                script=str(script_path),
                exit_code=-1,
                stdout=stdout.text(),
                stderr=err_text,
                elapsed_ms=elapsed_ms,
                truncated=stdout.truncated or stderr.truncated,
                timed_out=True,
            )

        result = ExecutionResult(
            script=str(script_path),
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.text(),
            stderr=stderr.text(),
            elapsed_ms=elapsed_ms,
            truncated=stdout.truncated or stderr.truncated,
        )
        logger.info(
            f"Script {script_path.name} completed with code {result.exit_code} "
            f"in {elapsed_ms}ms" + (" (output truncated)" if result.truncated else "")
        )
        return result

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, payload: bytes) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(payload)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # 脚本没有读取 stdin 就退出了
            pass
        finally:
            process.stdin.close()

    @staticmethod
    async def _drain(stream: Optional[asyncio.StreamReader], buffer: _CappedBuffer) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            # 超过上限后继续读取并丢弃，避免子进程因管道写满而阻塞
            buffer.feed(chunk)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """杀死脚本及其派生的整个进程组"""
        if process.returncode is None:
            try:
                if os.name != "nt":
                    os.killpg(process.pid, signal.SIGKILL)
                else:
                    process.kill()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(process.wait(), timeout=_REAP_TIMEOUT)
        except TimeoutError:
            logger.error(f"Process {process.pid} did not exit after kill")
