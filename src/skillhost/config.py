"""
skillhost 配置模块
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置"""

    # 路径配置
    project_root: Path = Field(
        default_factory=lambda: Path.cwd(), description="项目根目录 (默认为当前工作目录)"
    )
    skill_directories: list[str] = Field(
        default_factory=lambda: [
            # 项目级别
            "skills",
            ".claude/skills",
            ".cursor/skills",
            ".codex/skills",
            # 用户级别 (全局)
            "~/.claude/skills",
            "~/.cursor/skills",
            "~/.codex/skills",
        ],
        description="技能目录（按优先级排序，同名技能以靠前目录为准）",
    )
    prerequisite_directories: list[str] = Field(
        default_factory=lambda: ["data", "."],
        description="前置资源（如 preferences.md）的查找目录，相对 project_root",
    )

    # === 匹配配置 ===
    selection_threshold: float = Field(
        default=0.3, gt=0, description="最低选中分数 (必须大于 0)，最高分低于该值时结果为 NoMatch"
    )
    ambiguity_margin: float = Field(
        default=0.05, ge=0, description="与最高分差距在该范围内的候选视为并列"
    )
    ambiguity_policy: str = Field(
        default="ask",
        description="并列处理策略: ask(交给调用方消歧) | auto(自动选排名第一)",
    )
    match_top_k: int = Field(default=5, description="匹配结果最多返回的候选数")

    # === 执行配置 ===
    script_timeout_seconds: float = Field(default=30, description="单个技能脚本的执行超时（秒）")
    invocation_timeout_seconds: float = Field(
        default=60, description="单次调用的总截止时间（秒），覆盖前置解析与脚本执行"
    )
    script_output_cap_bytes: int = Field(
        default=64 * 1024, description="脚本输出捕获上限（字节），超出部分截断"
    )
    max_concurrent_executions: int = Field(default=8, description="同时执行的技能脚本最大数量")

    # === 热加载 ===
    skill_watch_interval_seconds: float = Field(
        default=0, description="技能目录变更轮询间隔（秒，0=禁用）"
    )

    # === HTTP API ===
    api_host: str = Field(default="127.0.0.1", description="API 绑定地址")
    api_port: int = Field(default=18910, description="API 端口")

    # === 日志配置 ===
    log_level: str = Field(default="INFO", description="日志级别")
    log_dir: str = Field(default="logs", description="日志目录")
    log_file_prefix: str = Field(default="skillhost", description="日志文件前缀")
    log_max_size_mb: int = Field(default=10, description="单个日志文件最大大小（MB）")
    log_backup_count: int = Field(default=30, description="保留的日志文件数量")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - [%(invocation_id)s] %(message)s",
        description="日志格式",
    )
    log_to_console: bool = Field(default=True, description="是否输出到控制台")
    log_to_file: bool = Field(default=False, description="是否输出到文件")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        # 忽略空字符串环境变量，否则 pydantic 会尝试把 "" 解析成 int/float
        "env_ignore_empty": True,
    }

    @property
    def skill_paths(self) -> list[Path]:
        """技能目录的绝对路径（不检查是否存在）"""
        paths = []
        for entry in self.skill_directories:
            path = Path(entry).expanduser()
            paths.append(path if path.is_absolute() else self.project_root / path)
        return paths

    @property
    def prerequisite_paths(self) -> list[Path]:
        """前置资源查找目录的绝对路径"""
        return [
            p if p.is_absolute() else self.project_root / p
            for p in (Path(entry).expanduser() for entry in self.prerequisite_directories)
        ]

    @property
    def log_dir_path(self) -> Path:
        """日志目录完整路径"""
        return self.project_root / self.log_dir

    @property
    def error_log_path(self) -> Path:
        """错误日志文件路径（只记录 ERROR/CRITICAL）"""
        return self.log_dir_path / "error.log"


# 全局配置实例
settings = Settings()
