"""
Body encoding helpers

Bodies are stored as JSON values when the payload is JSON, as text when it
decodes as UTF-8, and otherwise as a base64 binary marker.
"""

import base64
import json
from typing import Any, Optional

BINARY_TYPE = "binary"


def is_json_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    value = content_type.lower()
    return "application/json" in value or "text/json" in value or "+json" in value


def looks_like_json(text: str) -> bool:
    stripped = text.strip()
    return (stripped.startswith("{") and stripped.endswith("}")) or (
        stripped.startswith("[") and stripped.endswith("]")
    )


def binary_marker(content: bytes) -> dict:
    return {
        "_type": BINARY_TYPE,
        "_encoding": "base64",
        "data": base64.b64encode(content).decode("ascii"),
    }


def is_binary_marker(body: Any) -> bool:
    return isinstance(body, dict) and body.get("_type") == BINARY_TYPE and "data" in body


def decode_body(content: bytes, content_type: Optional[str] = None) -> Any:
    """Turn raw payload bytes into a storable value"""
    if not content:
        return ""
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        return binary_marker(content)

    if is_json_content_type(content_type):
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text


def encode_body(body: Any) -> Optional[bytes]:
    """Turn a stored body back into bytes for an outbound request"""
    if body is None or body == "":
        return None
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    if is_binary_marker(body):
        return base64.b64decode(body["data"])
    return json.dumps(body, ensure_ascii=False).encode("utf-8")


def render_template(template: str, content_type: Optional[str]) -> str:
    """
    Prepare a response rule body template

    JSON templates for JSON responses are parsed and re-serialised so that
    variable substitution can later work on the parsed value. Anything that
    does not parse is returned untouched.
    """
    if not is_json_content_type(content_type) or not looks_like_json(template):
        return template
    try:
        value = json.loads(template)
    except ValueError:
        return template
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
