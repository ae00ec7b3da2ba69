# Copyright © 2026 Apple Inc.

from typing import Dict, List, Optional, Sequence


def convert_chat(messages: Sequence[Dict[str, str]], role_mapping: Optional[dict] = None):
    """Flatten chat messages into a role-prefixed plain text prompt."""
    default_role_mapping = {
        "system": "ASSISTANT's RULE: ",
        "user": "USER: ",
        "assistant": "ASSISTANT: ",
        "stop": "\n",
    }
    role_mapping = role_mapping if role_mapping is not None else default_role_mapping

    prompt = ""
    for line in messages:
        role_prefix = role_mapping.get(line["role"], "")
        stop = role_mapping.get("stop", "")
        content = line.get("content", "")
        prompt += f"{role_prefix}{content}{stop}"

    prompt += role_mapping.get("assistant", "")
    return prompt.rstrip()


def llama3_prompt(
    system_prompt: Optional[str],
    messages: Sequence[Dict[str, str]],
    user_prompt: str,
) -> str:
    """
    Build a Llama 3 style chat prompt.

    Template::

        <|begin_of_text|><|start_header_id|>system<|end_header_id|>

        {system_prompt}<|eot_id|><|start_header_id|>user<|end_header_id|>

        {user_prompt}<|eot_id|><|start_header_id|>assistant<|end_header_id|>

    History messages are inserted between the system prompt and the final
    user turn in order. An empty ``user_prompt`` adds no final user turn,
    since chat-style requests carry the last user message in the history.
    """
    parts: List[str] = ["<|begin_of_text|>"]

    if system_prompt is not None:
        parts.append(
            f"<|start_header_id|>system<|end_header_id|>\n\n{system_prompt}<|eot_id|>"
        )

    for message in messages:
        parts.append(
            f"<|start_header_id|>{message['role']}<|end_header_id|>\n\n"
            f"{message['content']}<|eot_id|>"
        )

    if user_prompt:
        parts.append(
            f"<|start_header_id|>user<|end_header_id|>\n\n{user_prompt}<|eot_id|>"
        )
    parts.append("<|start_header_id|>assistant<|end_header_id|>\n\n")
    return "".join(parts)
