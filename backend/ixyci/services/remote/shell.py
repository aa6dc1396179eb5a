from typing import Callable, Optional, Protocol
from ixyci.models.vm import Credential


class RemoteSession(Protocol):
    def run(self, command: str, cwd: str, on_output: Callable[[str], None],
            abort: Callable[[], bool]) -> Optional[int]:
        """
        Execute `command` in `cwd`, feeding combined stdout/stderr to `on_output` as it
        arrives. Returns the exit status, or None if `abort()` became true and the command
        was stopped. Transport failures raise RemoteConnectionError.
        """
        ...

    def upload_file(self, local_path: str, remote_path: str, mode: int) -> None:
        ...

    def download_file(self, remote_path: str) -> bytes:
        """Raises FileNotFoundError when `remote_path` does not exist."""
        ...

    def close(self) -> None:
        ...


class RemoteShell(Protocol):
    def connect(self, address: str, credential: Credential, timeout: float) -> RemoteSession:
        """Open an authenticated session. Refusals and auth failures raise RemoteConnectionError."""
        ...
