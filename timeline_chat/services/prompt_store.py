"""Prompt catalog for every LLM pass and every canned reply.

Entries live in ``prompts/prompts.json``. A value is either a string or a list
of lines; lists are joined with newlines when rendered, and can also be read
back as a list (section headings, for example).
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any


PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"
_catalog_cache: dict[str, Any] | None = None
_catalog_mtime_ns: int | None = None


def _load_catalog() -> dict[str, Any]:
    global _catalog_cache, _catalog_mtime_ns
    mtime_ns = PROMPTS_PATH.stat().st_mtime_ns
    if _catalog_cache is not None and _catalog_mtime_ns == mtime_ns:
        return _catalog_cache

    payload = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Prompt catalog must be a JSON object.")
    _catalog_cache = payload
    _catalog_mtime_ns = mtime_ns
    return payload


def _resolve_node(key: str) -> Any:
    node: Any = _load_catalog()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Prompt key not found: {key}")
        node = node[part]
    return node


def prompt_lines(key: str) -> list[str]:
    node = _resolve_node(key)
    if isinstance(node, str):
        return [node]
    if isinstance(node, list) and all(isinstance(line, str) for line in node):
        return list(node)
    raise TypeError(f"Prompt key must map to a string or list of strings: {key}")


def render_prompt(key: str, **values: Any) -> str:
    template = Template("\n".join(prompt_lines(key)))
    try:
        return template.substitute(**values)
    except KeyError as exc:
        missing = str(exc.args[0])
        raise KeyError(f"Missing template value '{missing}' for prompt '{key}'") from exc


def clear_prompt_cache() -> None:
    global _catalog_cache, _catalog_mtime_ns
    _catalog_cache = None
    _catalog_mtime_ns = None
