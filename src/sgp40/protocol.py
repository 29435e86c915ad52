from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import EngineComputeError
from .models import VOC_INDEX_MAX, AlgorithmSnapshot, TuningParams, check_raw_sample

OK_PREFIX = "OK: "
ERR_PREFIX = "ERR: "


@dataclass(frozen=True)
class Reply:
    """One framed answer of the algorithm program."""

    ok: bool
    payload: Optional[str] = None

    def unwrap(self) -> Optional[str]:
        if not self.ok:
            raise EngineComputeError(self.payload or "")
        return self.payload


def encode_process(sraw: int) -> str:
    return f"process {check_raw_sample(sraw)}\n"


def encode_get_states() -> str:
    return "get_states\n"


def encode_set_states(snapshot: AlgorithmSnapshot) -> str:
    return f"set_states {int(snapshot.mean)} {int(snapshot.std)}\n"


def encode_tuning_params(params: TuningParams) -> str:
    return "tuning_params " + " ".join(str(value) for value in params.as_tuple()) + "\n"


def parse_reply(line: str) -> Optional[Reply]:
    """
    Frame a single output line. Returns None for anything that is neither an
    ``OK`` nor an ``ERR: `` answer; the program's stderr is merged into the
    same stream, so such lines are diagnostics rather than replies.
    """
    stripped = line.rstrip("\r\n")
    if stripped.startswith(OK_PREFIX):
        return Reply(ok=True, payload=stripped[len(OK_PREFIX) :])
    if stripped == "OK":
        return Reply(ok=True)
    if stripped.startswith(ERR_PREFIX):
        return Reply(ok=False, payload=stripped[len(ERR_PREFIX) :])
    return None


def parse_voc_index(payload: Optional[str]) -> int:
    """Parse a VOC index; 0 is what the algorithm reports while it warms up."""
    try:
        value = int((payload or "").strip())
    except ValueError as exc:
        raise EngineComputeError(f"malformed VOC index payload: {payload!r}") from exc
    if not 0 <= value <= VOC_INDEX_MAX:
        raise EngineComputeError(f"VOC index out of range: {value}")
    return value


def parse_states(payload: Optional[str]) -> AlgorithmSnapshot:
    fields = [item for item in (payload or "").strip().split(",") if item]
    if len(fields) != 2 or not fields[0].startswith("mean:") or not fields[1].startswith("std:"):
        raise EngineComputeError(f"malformed states payload: {payload!r}")
    try:
        return AlgorithmSnapshot(
            mean=int(fields[0][len("mean:") :]),
            std=int(fields[1][len("std:") :]),
        )
    except ValueError as exc:
        raise EngineComputeError(f"malformed states payload: {payload!r}") from exc
