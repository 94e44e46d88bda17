from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


# ── Content blocks ──────────────────────────────────────────────


@dataclass
class TextBlock:
    text: str

    def to_dict(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            d["is_error"] = True
        return d


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


def block_from_dict(d: dict) -> ContentBlock:
    kind = d.get("type")
    if kind == "text":
        return TextBlock(text=d.get("text", ""))
    if kind == "tool_use":
        return ToolUseBlock(id=d["id"], name=d["name"], input=d.get("input") or {})
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=d["tool_use_id"],
            content=str(d.get("content", "")),
            is_error=bool(d.get("is_error", False)),
        )
    raise ValueError(f"Unknown content block type: {kind!r}")


# ── Messages ────────────────────────────────────────────────────


@dataclass
class Message:
    role: str  # user | assistant
    content: str | list[ContentBlock]

    @property
    def blocks(self) -> list[ContentBlock]:
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)]
        return self.content

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    def to_dict(self) -> dict:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [b.to_dict() for b in self.content]}

    @classmethod
    def from_dict(cls, d: dict) -> Message:
        content = d.get("content", "")
        if isinstance(content, list):
            content = [block_from_dict(b) for b in content]
        return cls(role=d["role"], content=content)


def history_to_dicts(messages: list[Message]) -> list[dict]:
    return [m.to_dict() for m in messages]


def history_from_dicts(data: list[dict]) -> list[Message]:
    return [Message.from_dict(d) for d in data]
