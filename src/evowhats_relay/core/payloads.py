"""Normalização do corpo de webhooks: JSON ou form-urlencoded → dict aninhado.

O Bitrix24 envia eventos como `application/x-www-form-urlencoded` com chaves
no estilo PHP (`data[MESSAGE][ID]=1`, `auth[domain]=x.bitrix24.com`).
"""
from __future__ import annotations
import json
import re
from typing import Any, Dict
from urllib.parse import parse_qsl
from .errors import UnparsablePayload

_KEY_PARTS = re.compile(r"[^\[\]]+|\[\]")


def _split_key(key: str) -> list[str]:
    return [p if p != "[]" else "" for p in _KEY_PARTS.findall(key)]


def _assign(target: Dict[str, Any], parts: list[str], value: str) -> None:
    node = target
    for i, part in enumerate(parts):
        last = i == len(parts) - 1
        if part == "":
            part = str(sum(1 for k in node if k.isdigit()))
        if last:
            node[part] = value
            return
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child


def parse_form(body: str) -> Dict[str, Any]:
    """Converte `a[b][c]=1` em {"a": {"b": {"c": "1"}}}."""
    out: Dict[str, Any] = {}
    for key, value in parse_qsl(body, keep_blank_values=True):
        parts = _split_key(key)
        if parts:
            _assign(out, parts, value)
    return out


def decode_body(raw: bytes, content_type: str | None = None) -> Dict[str, Any]:
    """Decodifica o corpo cru do webhook num dict, independente da codificação."""
    text = (raw or b"").decode("utf-8", errors="replace").strip()
    if not text:
        raise UnparsablePayload("empty body")
    ctype = (content_type or "").lower()
    if "application/x-www-form-urlencoded" in ctype or (not text.startswith(("{", "[")) and "=" in text):
        data = parse_form(text)
        if not data:
            raise UnparsablePayload("empty form body")
        return data
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise UnparsablePayload(f"invalid json: {exc}") from exc
    if not isinstance(data, dict):
        raise UnparsablePayload("json body is not an object")
    return data
