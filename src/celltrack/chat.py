from __future__ import annotations

import base64
import http.client
import json
import re
import socket
from typing import Any, Callable, Mapping
from urllib import error as url_error
from urllib import request as url_request

from .errors import VisionServiceError


ChatTransport = Callable[..., dict[str, Any]]


def image_bytes_to_data_url(image: bytes, mime: str = "image/jpeg") -> str:
    b64 = base64.b64encode(image).decode("ascii")
    return f"data:{mime};base64,{b64}"


def extract_chat_completion_text(response_payload: Mapping[str, Any]) -> str:
    """
    Parse OpenAI-compatible chat completion payload text.
    """
    choices = response_payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, Mapping):
        return ""
    message = first.get("message")
    if not isinstance(message, Mapping):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        text_parts: list[str] = []
        for item in content:
            if not isinstance(item, Mapping):
                continue
            if item.get("type") == "text" and isinstance(item.get("text"), str):
                text_parts.append(item["text"].strip())
        return " ".join(part for part in text_parts if part).strip()
    return ""


def extract_json_object_from_text(text: str) -> dict[str, Any]:
    direct = text.strip()
    if direct:
        try:
            parsed = json.loads(direct)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, flags=re.DOTALL | re.IGNORECASE)
    if fenced:
        try:
            parsed = json.loads(fenced.group(1))
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise ValueError(f"Could not parse JSON object from model output: {exc}") from exc
        if isinstance(parsed, dict):
            return parsed

    raise ValueError("Could not parse JSON object from model output")


def post_chat_completion(
    *,
    endpoint: str,
    payload: Mapping[str, Any],
    timeout_sec: float,
    api_key: str | None = None,
) -> dict[str, Any]:
    """
    POST one chat-completions request.
    Failures raise VisionServiceError; 5xx and transport problems are retryable.
    """
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    try:
        request = url_request.Request(
            endpoint,
            data=body,
            headers=headers,
            method="POST",
        )
        with url_request.urlopen(request, timeout=float(timeout_sec)) as response:
            raw = response.read().decode("utf-8")
    except url_error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise VisionServiceError(
            f"Request failed with HTTP {exc.code}: {detail[:300]}",
            retryable=exc.code >= 500,
            status=exc.code,
        ) from exc
    except (url_error.URLError, http.client.HTTPException, socket.timeout, OSError) as exc:
        raise VisionServiceError(f"Request failed: {exc}", retryable=True) from exc
    except ValueError as exc:
        # Bad endpoint URL or a body that is not UTF-8.
        raise VisionServiceError(f"Unusable request or response: {exc}", retryable=False) from exc

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise VisionServiceError(f"Response is not JSON: {exc}", retryable=False) from exc
    if not isinstance(parsed, dict):
        raise VisionServiceError("Response JSON is not an object", retryable=False)
    return parsed
