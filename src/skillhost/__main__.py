"""
skillhost 包入口点 - 支持 `python -m skillhost` 调用
"""

from skillhost.main import app

if __name__ == "__main__":
    app()
