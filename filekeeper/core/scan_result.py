"""Outcome of a malware scan."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ScanResult:
    """Verdict returned by :class:`~filekeeper.core.scan_client.ScanClient`.

    Attributes:
        is_clean: ``True`` when no threat was found.
        threat_name: Signature name, ``"FILE_TOO_LARGE"`` for streams over the
            scan limit, ``None`` when clean.
        details: Ordered diagnostic key/value pairs (server, bytes scanned,
            scan time, raw detection line).  Not interpreted by the core.
    """

    is_clean: bool
    threat_name: str | None = None
    details: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_clean": self.is_clean,
            "threat_name": self.threat_name,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScanResult:
        return cls(
            is_clean=bool(data["is_clean"]),
            threat_name=data.get("threat_name"),
            details=dict(data.get("details") or {}),
        )
