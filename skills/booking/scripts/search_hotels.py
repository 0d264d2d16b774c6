#!/usr/bin/env python3
"""
提取酒店搜索参数

从 stdin 读取 JSON 输入（request / prerequisites），
解析目的地和入住日期，输出 JSON 格式的搜索参数。

用法:
    echo '{"request": "Find hotels in Portland for August 2-4"}' | python search_hotels.py
"""

import json
import re
import sys
from datetime import date

MONTHS = {
    name: index
    for index, name in enumerate(
        [
            "january", "february", "march", "april", "may", "june",
            "july", "august", "september", "october", "november", "december",
        ],
        start=1,
    )
}

_DESTINATION_RE = re.compile(r"\b(?:in|at|near|to)\s+([A-Z][\w'-]*(?:\s+[A-Z][\w'-]*)*)")
_RANGE_RE = re.compile(r"\b([A-Za-z]+)\s+(\d{1,2})\s*(?:-|to|–)\s*(\d{1,2})\b")


def parse_dates(text: str, today: date) -> dict:
    """解析 "August 2-4" 形式的日期区间"""
    for match in _RANGE_RE.finditer(text):
        month = MONTHS.get(match.group(1).lower())
        if not month:
            continue
        start_day, end_day = int(match.group(2)), int(match.group(3))
        year = today.year if month >= today.month else today.year + 1
        try:
            check_in = date(year, month, start_day)
            check_out = date(year, month, end_day)
        except ValueError as e:
            return {"error": f"Invalid date: {e}"}
        if check_out <= check_in:
            return {"error": "Check-out must be after check-in"}
        return {
            "check_in": check_in.isoformat(),
            "check_out": check_out.isoformat(),
            "nights": (check_out - check_in).days,
        }
    return {}


def parse_destination(text: str) -> str | None:
    match = _DESTINATION_RE.search(text)
    if not match:
        return None
    # 去掉紧跟的月份，如 "Portland August"
    words = [w for w in match.group(1).split() if w.lower() not in MONTHS]
    return " ".join(words) or None


def main() -> int:
    raw = sys.stdin.read()
    try:
        payload = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return 2

    request = payload.get("request", "")
    preferences = (payload.get("prerequisites") or {}).get("preferences")

    result = {
        "destination": parse_destination(request),
        **parse_dates(request, date.today()),
        "preferences_applied": bool(preferences),
    }
    if "error" in result:
        print(result["error"], file=sys.stderr)
        return 1

    print(json.dumps(result, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
