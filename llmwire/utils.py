import base64
import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

import httpx

from .types import (
    ImagePart, Message, Part, TextPart, Tool, ToolCall, ToolResult,
)

# Images larger than this (decoded) go through the upload resolver
LARGE_IMAGE_BYTES = 5 * 1024 * 1024

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}

# =============================================================================
# Image Helpers
# =============================================================================

def encode_image_file(image_path: Union[str, Path]) -> Tuple[str, str]:
    """
    Encode a local image file to base64.

    Args:
        image_path (Union[str, Path]): Path to the image file.

    Returns:
        Tuple[str, str]: (base64 data, MIME type guessed from the extension).

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {image_path}")

    mime_type = MIME_TYPES.get(path.suffix.lower(), "image/jpeg")
    with open(path, "rb") as f:
        b64_data = base64.b64encode(f.read()).decode("utf-8")

    return b64_data, mime_type


async def encode_image_url(
    url: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> Tuple[str, str]:
    """
    Fetch an image from a URL and encode it to base64.

    Args:
        url (str): The publicly accessible URL of the image.
        client (httpx.AsyncClient, optional): Client to reuse. A short-lived
            one is created when omitted.

    Returns:
        Tuple[str, str]: (base64 data, MIME type from the Content-Type header).

    Raises:
        httpx.HTTPError: If the download fails (timeout, 404, etc.).
    """
    headers = {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    }

    if client is None:
        async with httpx.AsyncClient(timeout=30.0, headers=headers, follow_redirects=True) as http_client:
            response = await http_client.get(url)
    else:
        response = await client.get(url, headers=headers, follow_redirects=True)
    response.raise_for_status()

    content_type = response.headers.get("content-type", "image/jpeg")
    mime_type = content_type.split(";")[0].strip()
    b64_data = base64.b64encode(response.content).decode("utf-8")
    return b64_data, mime_type


def parse_data_uri(uri: str) -> Tuple[str, str]:
    """
    Split ``data:<mime>;base64,<data>`` into (data, mime type).

    Raises:
        ValueError: If ``uri`` is not a data URI.
    """
    if not uri.startswith("data:") or "," not in uri:
        raise ValueError(f"Not a data URI: {uri[:40]}")
    header, data = uri.split(",", 1)
    mime_type = header[5:].split(";")[0] or "application/octet-stream"
    return data, mime_type


def image_inline_data(part: ImagePart) -> Optional[Tuple[str, str]]:
    """
    (base64 data, MIME type) when the image is carried inline, either as
    ``data`` or as a data URI. None for remote URLs.
    """
    if part.get("data"):
        return part["data"], part.get("mime_type") or "image/jpeg"
    url = part.get("url") or ""
    if url.startswith("data:"):
        return parse_data_uri(url)
    return None


def base64_decoded_size(data: str) -> int:
    """Byte size of base64 ``data`` once decoded."""
    padding = len(data) - len(data.rstrip("="))
    return (len(data) * 3) // 4 - padding


def create_image_content(
    source: str,
    *,
    mime_type: Optional[str] = None,
) -> ImagePart:
    """
    Create an image part for a canonical message.

    Args:
        source (str): Can be:
            - A local file path (e.g., "/path/to/image.png")
            - A remote URL (e.g., "https://example.com/image.jpg")
            - A data URI (e.g., "data:image/png;base64,...")
            - Raw base64 data (requires `mime_type` kwarg)
        mime_type (str, optional): Required if `source` is raw base64 data.

    Returns:
        ImagePart: ``{"type": "image", ...}`` with ``url`` or ``data``.

    Raises:
        ValueError: If the source type cannot be determined.
    """
    if source.startswith("data:"):
        data, detected = parse_data_uri(source)
        return {"type": "image", "mime_type": detected, "data": data}
    if source.startswith(("http://", "https://")):
        part: ImagePart = {"type": "image", "url": source}
        if mime_type:
            part["mime_type"] = mime_type
        return part
    if mime_type:
        return {"type": "image", "mime_type": mime_type, "data": source}
    if len(source) < 260 and Path(source).exists():
        b64_data, detected = encode_image_file(source)
        return {"type": "image", "mime_type": detected, "data": b64_data}
    raise ValueError(
        f"Cannot determine image source type for: {source[:50]}... "
        "Provide mime_type for raw base64 data."
    )


def create_text_content(text: str) -> TextPart:
    return {"type": "text", "text": text}


def create_message(
    role: Literal["system", "user", "assistant"],
    content: Union[str, List[Union[str, Part]]],
) -> Message:
    """
    Create a canonical Message, turning plain strings inside a list into
    text parts.
    """
    if isinstance(content, str):
        return {"role": role, "content": content}

    normalized: List[Part] = []
    for item in content:
        if isinstance(item, str):
            normalized.append(create_text_content(item))
        else:
            normalized.append(item)
    return {"role": role, "content": normalized}


# =============================================================================
# Tool Calling Helpers
# =============================================================================

def create_tool(
    name: str,
    description: str,
    parameters: Dict[str, Any],
    required: Optional[List[str]] = None,
) -> Tool:
    """
    Create a tool declaration.

    Args:
        name (str): Function name.
        description (str): What the tool does.
        parameters (Dict): JSON schema ``properties`` mapping.
        required (List[str], optional): Required parameter names.
    """
    return {
        "name": name,
        "description": description,
        "parameters": {
            "type": "object",
            "properties": parameters,
            "required": required or [],
        },
    }


def create_tool_result(
    tool_call_id: str,
    content: Any,
    *,
    name: Optional[str] = None,
    is_error: bool = False,
) -> ToolResult:
    result: ToolResult = {"tool_call_id": tool_call_id, "content": content}
    if name:
        result["name"] = name
    if is_error:
        result["is_error"] = True
    return result


def create_assistant_message_with_tool_calls(
    content: str,
    tool_calls: List[ToolCall],
    *,
    thinking: Optional[Part] = None,
    thought_signature: Optional[str] = None,
    encrypted_reasoning: Optional[str] = None,
) -> Message:
    """
    Create the assistant turn that requested ``tool_calls``.

    Reasoning carried by the reply (signed thinking, Gemini thought signature,
    encrypted reasoning) is stored on the message so adapters can thread it
    back on the next request.
    """
    parts: List[Part] = []
    if thinking:
        parts.append(thinking)
    if content:
        parts.append(create_text_content(content))
    for call in tool_calls:
        part = {
            "type": "tool_use",
            "id": call["id"],
            "name": call["name"],
            "arguments": call.get("arguments", {}),
        }
        if call.get("thought_signature"):
            part["thought_signature"] = call["thought_signature"]
        parts.append(part)

    message: Message = {"role": "assistant", "content": parts}
    if thought_signature:
        message["thought_signature"] = thought_signature
    if encrypted_reasoning:
        message["encrypted_reasoning"] = encrypted_reasoning
    return message


def create_tool_result_message(results: List[ToolResult]) -> Message:
    """User turn carrying the results of the previous tool calls."""
    parts: List[Part] = []
    for result in results:
        part = {
            "type": "tool_result",
            "tool_use_id": result["tool_call_id"],
            "content": result.get("content", ""),
        }
        if result.get("name"):
            part["name"] = result["name"]
        if result.get("is_error"):
            part["is_error"] = True
        parts.append(part)
    return {"role": "user", "content": parts}


def tool_content_text(content: Any) -> str:
    """Text form of a tool result's content."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict) and set(content) <= {"text", "image"} and "text" in content:
        return str(content["text"])
    return json.dumps(content, ensure_ascii=False)


def tool_content_image(content: Any) -> Optional[str]:
    """Image data URI attached to a multimodal tool result, if any."""
    if isinstance(content, dict) and isinstance(content.get("image"), str):
        return content["image"]
    return None
