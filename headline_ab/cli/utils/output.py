"""Output formatting helpers for CLI."""

from __future__ import annotations

import json
import sys
import unicodedata
from typing import Iterable, List, NoReturn, Sequence

import click

from headline_ab.errors import ExperimentError

# 呼び出し側の入力に起因するエラーの終了コード
EXIT_CLIENT_ERROR = 2
# ストレージ障害の終了コード
EXIT_STORAGE_ERROR = 1


def display_width(text: str) -> int:
    """端末上の表示幅（全角文字は2桁として数える）"""
    return sum(2 if unicodedata.east_asian_width(ch) in ("F", "W") else 1 for ch in text)


def _pad(text: str, width: int) -> str:
    return text + " " * (width - display_width(text))


def format_table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> str:
    """Format a table whose columns line up for full-width (Japanese) text."""
    cells: List[List[str]] = [list(map(str, headers))]
    cells.extend(list(map(str, row)) for row in rows)

    widths: List[int] = []
    for row in cells:
        for idx, cell in enumerate(row):
            if idx >= len(widths):
                widths.append(display_width(cell))
            else:
                widths[idx] = max(widths[idx], display_width(cell))

    lines = ["  ".join(_pad(cell, widths[i]) for i, cell in enumerate(row)).rstrip()
             for row in cells]
    separator = "-" * (sum(widths) + 2 * (len(widths) - 1))
    return "\n".join([lines[0], separator] + lines[1:])


def echo_table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> None:
    """Echo a simple table."""
    click.echo(format_table(headers, rows))


def echo_json(data) -> None:
    """Echo JSON with UTF-8 characters preserved."""
    click.echo(json.dumps(data, ensure_ascii=False, indent=2))


def format_number(n: int) -> str:
    """Format an integer with thousands separators."""
    return f"{n:,}"


def format_percent(rate: float) -> str:
    if rate == 0:
        return "0%"
    return f"{rate * 100:.2f}%"


def exit_with_error(error: ExperimentError) -> NoReturn:
    """Echo an engine error and exit with the matching status code."""
    click.echo(f"[エラー] {error}", err=True)
    sys.exit(EXIT_CLIENT_ERROR if error.is_client_error else EXIT_STORAGE_ERROR)
