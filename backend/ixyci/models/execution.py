import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Artifact:
    local_path: str
    remote_path: str
    mode: int = 0o644


@dataclass(frozen=True)
class ArtifactSet:
    artifacts: Tuple[Artifact, ...] = ()

    def __iter__(self):
        return iter(self.artifacts)

    def __len__(self):
        return len(self.artifacts)


@dataclass(frozen=True)
class Step:
    """One command of the fixed checkout/build/run contract."""

    name: str
    command: str
    cwd: str = "."
    env: Tuple[Tuple[str, str], ...] = ()
    # Run through the uploaded runner so the process group can be killed on abort
    cancellable: bool = False


@dataclass(frozen=True)
class CommandSequence:
    steps: Tuple[Step, ...]
    capture_path: str


@dataclass(frozen=True)
class ExecutionOutcome:
    capture: bytes
    log: str
    durations: Dict[str, float] = field(default_factory=dict)


class JobLog:
    """
    Append-only log of the commands run for a job and their combined output.
    Written by the worker thread while the event loop may read it.
    """

    def __init__(self):
        self._entries: List[Tuple[str, List[str]]] = []
        self._lock = threading.Lock()

    def begin(self, command: str):
        with self._lock:
            self._entries.append((command, []))

    def write(self, text: str):
        with self._lock:
            if not self._entries:
                self._entries.append(("", []))
            self._entries[-1][1].append(text)

    def note(self, message: str):
        """Orchestrator-side line, not tied to a remote command."""
        with self._lock:
            self._entries.append(("", [message + "\n"]))

    def entries(self) -> List[Tuple[str, str]]:
        with self._lock:
            return [(cmd, "".join(chunks)) for cmd, chunks in self._entries]

    def text(self) -> str:
        parts = []
        for command, output in self.entries():
            if command:
                parts.append(f"$ {command}\n{output}")
            else:
                parts.append(output)
        return "".join(p if p.endswith("\n") else p + "\n" for p in parts if p)

    def tail(self, lines: int) -> str:
        all_lines = self.text().splitlines()
        if len(all_lines) <= lines:
            return "\n".join(all_lines)
        return "\n".join([f"... ({len(all_lines) - lines} earlier lines omitted)"] + all_lines[-lines:])

    def __len__(self):
        with self._lock:
            return len(self._entries)


@dataclass
class Diagnostic:
    kind: str
    message: str
    stage: Optional[str] = None

    def to_dict(self):
        return {"kind": self.kind, "message": self.message, "stage": self.stage}
