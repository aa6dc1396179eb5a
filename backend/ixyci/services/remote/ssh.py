import codecs
import errno
import shlex
import socket
import time
from typing import Callable, Optional
import paramiko
from ixyci.core.errors import RemoteConnectionError
from ixyci.core.logging import get_logger
from ixyci.models.vm import Credential

logger = get_logger("ssh")

POLL_INTERVAL = 0.1
RECV_SIZE = 32768
# How long to keep draining output after the runner was told to stop
ABORT_DRAIN_SECONDS = 5.0


def ssh_handshake_probe(address: str, port: int, timeout: float) -> bool:
    """True if an SSH server at address:port completes the transport handshake."""
    transport = None
    try:
        sock = socket.create_connection((address, port), timeout=timeout)
        transport = paramiko.Transport(sock)
        transport.start_client(timeout=timeout)
        return True
    except (OSError, EOFError, paramiko.SSHException) as e:
        logger.debug(f"ssh probe {address}:{port} failed: {e}")
        return False
    finally:
        if transport is not None:
            transport.close()


class ParamikoSession:
    def __init__(self, client: paramiko.SSHClient, address: str):
        self.client = client
        self.address = address
        self._sftp: Optional[paramiko.SFTPClient] = None

    def _open_sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            self._sftp = self.client.open_sftp()
        return self._sftp

    def run(self, command: str, cwd: str, on_output: Callable[[str], None],
            abort: Callable[[], bool]) -> Optional[int]:
        full_command = f"cd {shlex.quote(cwd)} && {command}"
        logger.debug(f"[{self.address}] executing: {full_command}")
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            raise RemoteConnectionError(f"ssh session to {self.address} is closed")
        try:
            channel = transport.open_session()
            # Merge stderr into the default stream
            channel.set_combine_stderr(True)
            channel.exec_command(full_command)

            while True:
                if abort():
                    self._stop(channel, decoder, on_output)
                    return None
                if channel.recv_ready():
                    on_output(decoder.decode(channel.recv(RECV_SIZE)))
                    continue
                if channel.exit_status_ready():
                    break
                time.sleep(POLL_INTERVAL)

            while channel.recv_ready():
                on_output(decoder.decode(channel.recv(RECV_SIZE)))
            tail = decoder.decode(b"", final=True)
            if tail:
                on_output(tail)
            return channel.recv_exit_status()
        except (OSError, EOFError, paramiko.SSHException) as e:
            raise RemoteConnectionError(f"ssh session to {self.address} failed: {e}") from e

    def _stop(self, channel, decoder, on_output):
        # Closing stdin makes the runner kill the command's process group
        channel.shutdown_write()
        deadline = time.monotonic() + ABORT_DRAIN_SECONDS
        while time.monotonic() < deadline and not channel.exit_status_ready():
            if channel.recv_ready():
                on_output(decoder.decode(channel.recv(RECV_SIZE)))
            else:
                time.sleep(POLL_INTERVAL)
        channel.close()

    def upload_file(self, local_path: str, remote_path: str, mode: int) -> None:
        logger.debug(f"[{self.address}] uploading {local_path} -> {remote_path}")
        try:
            sftp = self._open_sftp()
            sftp.put(local_path, remote_path)
            sftp.chmod(remote_path, mode)
        except FileNotFoundError:
            raise
        except (OSError, EOFError, paramiko.SSHException) as e:
            raise RemoteConnectionError(f"upload of {local_path} to {self.address} failed: {e}") from e

    def download_file(self, remote_path: str) -> bytes:
        logger.debug(f"[{self.address}] downloading {remote_path}")
        try:
            with self._open_sftp().open(remote_path, "rb") as remote_file:
                return remote_file.read()
        except OSError as e:
            if e.errno == errno.ENOENT:
                raise FileNotFoundError(errno.ENOENT, f"{remote_path} not found on {self.address}") from e
            raise RemoteConnectionError(f"download of {remote_path} from {self.address} failed: {e}") from e
        except (EOFError, paramiko.SSHException) as e:
            raise RemoteConnectionError(f"download of {remote_path} from {self.address} failed: {e}") from e

    def close(self) -> None:
        try:
            if self._sftp is not None:
                self._sftp.close()
        finally:
            self.client.close()


class ParamikoShell:
    def connect(self, address: str, credential: Credential, timeout: float) -> ParamikoSession:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                address,
                port=credential.port,
                username=credential.login,
                key_filename=credential.private_key_path,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (OSError, EOFError, paramiko.SSHException) as e:
            client.close()
            raise RemoteConnectionError(f"ssh connection to {credential.login}@{address} failed: {e}") from e
        logger.info(f"SSH connected to {credential.login}@{address}")
        return ParamikoSession(client, address)
