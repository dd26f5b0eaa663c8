"""JSON-lines protocol messages for the editor bridge."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Optional, Union

from codecoach.engine.errors import ValidationError


@dataclass
class Request:
    """Incoming request from the editor extension."""
    id: int
    method: str
    params: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data) -> Request:
        if not isinstance(data, dict):
            raise ValidationError("request must be a JSON object")
        if data.get("id") is None or not data.get("method"):
            raise ValidationError("request needs an id and a method")
        params = data.get("params") or {}
        if not isinstance(params, dict):
            raise ValidationError("params must be a JSON object")
        return cls(
            id=data["id"],
            method=str(data["method"]),
            params=params,
        )



@dataclass
class Response:
    """Outgoing response. ``error`` is a message or a ``{"code", "message"}`` object."""
    id: int
    result: Optional[dict] = None
    error: Optional[Union[str, dict]] = None

    def to_json_line(self) -> str:
        d = {"id": self.id}
        if self.error is not None:
            d["error"] = self.error
        else:
            d["result"] = self.result
        return json.dumps(d) + "\n"


@dataclass
class Notification:
    """Server-initiated message (no id, no response expected)."""
    method: str
    params: dict = field(default_factory=dict)

    def to_json_line(self) -> str:
        return json.dumps({"method": self.method, "params": self.params}) + "\n"
