# coding=utf-8
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, Mapping, Optional


def http_json(
    method: str,
    url: str,
    body: Optional[Mapping[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
    timeout_sec: float = 30.0,
) -> Dict[str, Any]:
    """
    Blocking JSON request. ``urllib.error.HTTPError`` propagates so callers
    can map status codes; the response body is read into ``exc.body_text``.
    """
    data = None
    req_headers = {"Accept": "application/json"}
    if body is not None:
        data = json.dumps(dict(body), ensure_ascii=False).encode("utf-8")
        req_headers["Content-Type"] = "application/json"
    req_headers.update(dict(headers or {}))
    req = urllib.request.Request(url, data=data, headers=req_headers, method=str(method).upper())
    try:
        with urllib.request.urlopen(req, timeout=max(1.0, float(timeout_sec))) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        try:
            exc.body_text = exc.read().decode("utf-8", errors="replace")
        except Exception:
            exc.body_text = ""
        raise
    if not raw.strip():
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("json response must be an object")
    return payload


def http_error_detail(exc: urllib.error.HTTPError, limit: int = 200) -> str:
    text = str(getattr(exc, "body_text", "") or "").strip()
    if text:
        try:
            payload = json.loads(text)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            err = payload.get("error")
            if isinstance(err, dict) and err.get("message"):
                text = str(err.get("message"))
            elif isinstance(err, str):
                text = err
            elif payload.get("err_msg"):
                text = str(payload.get("err_msg"))
    detail = f"HTTP {exc.code}"
    if text:
        detail = f"{detail}: {text[:limit]}"
    return detail
