# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import hashlib
import json
import re
from typing import Any, Dict, List, Sequence

from coreason_gateway.models import Message, RequestOptions

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Trims, collapses whitespace and lowercases prompt text."""
    return _WHITESPACE.sub(" ", text.replace("\r\n", "\n").strip()).lower()


def normalize_messages(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    normalized: List[Dict[str, Any]] = []
    for message in messages:
        if isinstance(message.content, str):
            content: Any = normalize_text(message.content)
        else:
            content = [
                {**part, "text": normalize_text(part["text"])} if isinstance(part.get("text"), str) else part
                for part in message.content
            ]
        item: Dict[str, Any] = {"role": message.role, "content": content}
        if message.name:
            item["name"] = message.name
        normalized.append(item)
    return normalized


def _relevant_options(options: RequestOptions) -> Dict[str, Any]:
    # Options that change what a provider would answer. user_id and capability
    # requirements do not, so identical prompts from different users share entries.
    return {
        "provider": options.provider,
        "model": options.model,
        "temperature": options.temperature,
        "max_tokens": options.max_tokens,
        "tools": options.tools,
        "response_format": options.response_format,
        "reasoning_effort": options.reasoning_effort,
    }


def _digest(payload: Dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def build_cache_key(messages: Sequence[Message], options: RequestOptions) -> str:
    """
    Deterministic key over normalized messages, model/provider hints and relevant options.
    """
    return _digest({"messages": normalize_messages(messages), **_relevant_options(options)})


def similarity_scope(options: RequestOptions) -> str:
    """
    Partition of the similarity index: only requests with the same relevant
    options may answer each other.
    """
    return _digest(_relevant_options(options))[:16]


def request_text(messages: Sequence[Message]) -> str:
    """Flattened normalized text of a conversation, used for embeddings and text similarity."""
    lines: List[str] = []
    for item in normalize_messages(messages):
        content = item["content"]
        if isinstance(content, str):
            lines.append(f"{item['role']}: {content}")
        else:
            texts = [part["text"] for part in content if isinstance(part.get("text"), str)]
            lines.append(f"{item['role']}: {' '.join(texts)}")
    return "\n".join(lines)
