"""Bucket properties and their JSON form."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Union


class Quorum(str, Enum):
    """Symbolic replica counts accepted wherever a quorum value is."""

    QUORUM = "quorum"
    ALL = "all"


QuorumValue = Union[Quorum, int]


def encode_quorum(value: QuorumValue) -> str | int:
    if isinstance(value, Quorum):
        return value.value
    return int(value)


def decode_quorum(raw: Any) -> QuorumValue:
    """
    Parse a quorum value from its JSON form.

    Raises:
        ValueError: For a string other than ``quorum`` or ``all``, or a
            value that is neither string nor integer.
    """
    if isinstance(raw, str):
        try:
            return Quorum(raw)
        except ValueError:
            raise ValueError(f"Unexpected string quorum value: {raw!r}") from None
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"Unexpected quorum value: {raw!r}")
    return raw


_QUORUM_FIELDS = ("r", "w", "dw", "rw")
_WRITABLE_FIELDS = (
    "n_val",
    "allow_mult",
    "last_write_wins",
    "r",
    "w",
    "dw",
    "rw",
    "backend",
    "precommit",
    "postcommit",
)


@dataclass
class Properties:
    """
    Bucket properties.

    Writable settings left as None are not sent, so the store keeps its
    current value. ``name`` and the vclock pruning fields are read-only and
    only populated from the store's reply.
    """

    n_val: int | None = None
    allow_mult: bool | None = None
    last_write_wins: bool | None = None
    r: QuorumValue | None = None
    w: QuorumValue | None = None
    dw: QuorumValue | None = None
    rw: QuorumValue | None = None
    backend: str | None = None
    precommit: list[Any] | None = None
    postcommit: list[Any] | None = None
    name: str | None = None
    big_vclock: int | None = None
    small_vclock: int | None = None
    old_vclock: int | None = None
    young_vclock: int | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def to_json(self) -> dict[str, Any]:
        """Writable properties that are set, in the store's JSON shape."""
        out: dict[str, Any] = {}
        for name in _WRITABLE_FIELDS:
            value = getattr(self, name)
            if value is None:
                continue
            if name in _QUORUM_FIELDS:
                value = encode_quorum(value)
            out[name] = value
        return out

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Properties:
        """Build properties from the store's reply; unknown keys go to ``extra``."""
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                extra[key] = value
            elif key in _QUORUM_FIELDS and value is not None:
                kwargs[key] = decode_quorum(value)
            else:
                kwargs[key] = value
        return cls(extra=extra, **kwargs)


def default_properties() -> Properties:
    return Properties(n_val=3)
