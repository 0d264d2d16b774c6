"""
skillhost - 技能注册与分发引擎

为托管 Agent Skills (SKILL.md) 的运行时提供:
- 技能包加载与校验
- 原子切换的技能索引快照
- 请求 → 技能的相关性匹配
- 调用编排（前置资源解析、请求合并、取消、超时）
- 技能脚本的隔离执行
"""


def _resolve_version() -> str:
    """
    解析版本号。

    优先读取源码根目录的 pyproject.toml（editable 安装时始终最新），
    否则回退到已安装包的元数据。
    """
    from pathlib import Path

    version = "0.0.0-dev"

    project_root = Path(__file__).parent.parent.parent
    pyproject_path = project_root / "pyproject.toml"
    if pyproject_path.exists():
        try:
            import tomllib

            with open(pyproject_path, "rb") as f:
                return tomllib.load(f)["project"]["version"]
        except (OSError, KeyError, ValueError):
            pass

    try:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as meta_version

        version = meta_version("skillhost")
    except PackageNotFoundError:
        pass

    return version


__version__ = _resolve_version()

__author__ = "skillhost"
