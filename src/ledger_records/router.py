from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


READ_SOURCE_LEGACY = "legacy"
READ_SOURCE_MIRROR = "mirror"


class MigrationPhase(str, Enum):
    LEGACY_ONLY = "legacy_only"
    DUAL_WRITE = "dual_write"
    CUTOVER_READ = "cutover_read"
    MIRROR_PRIMARY = "mirror_primary"
    LEGACY_RETIRED = "legacy_retired"

    @classmethod
    def parse(cls, value: Any, default: Optional["MigrationPhase"] = None) -> Optional["MigrationPhase"]:
        if isinstance(value, MigrationPhase):
            return value
        token = str(value or "").strip().lower().replace("-", "_")
        if not token:
            return default
        for phase in cls:
            if phase.value == token or phase.name.lower() == token:
                return phase
        raise ValueError(f"unknown migration phase: {value!r}")

    @classmethod
    def from_flags(
        cls,
        *,
        dual_write: bool = False,
        read_mirror: bool = False,
        write_mirror: bool = False,
        legacy_mirror: bool = True,
    ) -> "MigrationPhase":
        """Derive a phase from the boolean rollout flags used before phases existed."""
        if write_mirror:
            return cls.MIRROR_PRIMARY if legacy_mirror else cls.LEGACY_RETIRED
        if read_mirror:
            return cls.CUTOVER_READ
        if dual_write:
            return cls.DUAL_WRITE
        return cls.LEGACY_ONLY

    @property
    def mirror_primary(self) -> bool:
        return self in {MigrationPhase.MIRROR_PRIMARY, MigrationPhase.LEGACY_RETIRED}


@dataclass(frozen=True)
class RoutePlan:
    phase: MigrationPhase
    read_source: str
    write_legacy: bool
    legacy_write_best_effort: bool
    write_mirror: bool
    compare_on_read: bool

    @property
    def mirror_primary(self) -> bool:
        return self.phase.mirror_primary

    @property
    def desync_code(self) -> str:
        if self.mirror_primary:
            return "records_v2_write_desync"
        return "records_v2_dual_write_desync"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "read_source": self.read_source,
            "write_legacy": self.write_legacy,
            "legacy_write_best_effort": self.legacy_write_best_effort,
            "write_mirror": self.write_mirror,
            "compare_on_read": self.compare_on_read,
        }


class MigrationRouter:
    """Per-request routing decisions for the current migration phase.

    The phase is operator configuration; ``set_phase`` is the only way it
    changes and nothing here ever looks at data.
    """

    def __init__(
        self,
        phase: MigrationPhase = MigrationPhase.LEGACY_ONLY,
        *,
        dual_read_compare: bool = False,
        legacy_mirror: bool = True,
    ) -> None:
        self._lock = threading.Lock()
        self._phase = MigrationPhase.parse(phase, MigrationPhase.LEGACY_ONLY)
        self._dual_read_compare = bool(dual_read_compare)
        self._legacy_mirror = bool(legacy_mirror)

    @property
    def phase(self) -> MigrationPhase:
        with self._lock:
            return self._phase

    def set_phase(self, phase: Any) -> RoutePlan:
        parsed = MigrationPhase.parse(phase)
        if parsed is None:
            raise ValueError("migration phase is required")
        with self._lock:
            self._phase = parsed
        return self.plan()

    def set_dual_read_compare(self, enabled: bool) -> RoutePlan:
        with self._lock:
            self._dual_read_compare = bool(enabled)
        return self.plan()

    def plan(self) -> RoutePlan:
        with self._lock:
            phase = self._phase
            compare = self._dual_read_compare
            legacy_mirror = self._legacy_mirror

        if phase == MigrationPhase.LEGACY_ONLY:
            return RoutePlan(phase, READ_SOURCE_LEGACY, True, False, False, False)
        if phase == MigrationPhase.DUAL_WRITE:
            return RoutePlan(phase, READ_SOURCE_LEGACY, True, False, True, compare)
        if phase == MigrationPhase.CUTOVER_READ:
            return RoutePlan(phase, READ_SOURCE_MIRROR, True, False, True, False)
        if phase == MigrationPhase.MIRROR_PRIMARY:
            return RoutePlan(phase, READ_SOURCE_MIRROR, legacy_mirror, legacy_mirror, True, False)
        return RoutePlan(phase, READ_SOURCE_MIRROR, False, False, True, False)

    @property
    def status(self) -> Dict[str, Any]:
        plan = self.plan()
        out = plan.to_dict()
        with self._lock:
            out["dual_read_compare"] = self._dual_read_compare
            out["legacy_mirror"] = self._legacy_mirror
        return out
