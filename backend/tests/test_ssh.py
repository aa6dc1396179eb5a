import pytest

from ixyci.core.errors import RemoteConnectionError
from ixyci.services.remote.ssh import ParamikoSession


class ChattyChannel:
    """Always has output ready until stdin is closed, like a verbose build."""

    def __init__(self):
        self.command = None
        self.stdin_closed = False
        self.closed = False
        self.exit_code = 0

    def set_combine_stderr(self, combine):
        pass

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return not self.stdin_closed

    def recv(self, size):
        return b"compiling...\n"

    def exit_status_ready(self):
        return self.stdin_closed

    def recv_exit_status(self):
        return self.exit_code

    def shutdown_write(self):
        self.stdin_closed = True

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, channel, active=True):
        self.channel = channel
        self.active = active

    def is_active(self):
        return self.active

    def open_session(self):
        return self.channel


class FakeClient:
    def __init__(self, transport):
        self.transport = transport

    def get_transport(self):
        return self.transport


def test_abort_stops_a_command_that_keeps_printing() -> None:
    channel = ChattyChannel()
    session = ParamikoSession(FakeClient(FakeTransport(channel)), "192.0.2.10")
    output = []
    polls = []

    def abort() -> bool:
        polls.append(1)
        return len(polls) > 3

    result = session.run("./ci/build", ".", output.append, abort)

    assert result is None
    assert channel.stdin_closed
    assert channel.closed
    assert len(output) == 3
    assert channel.command == "cd . && ./ci/build"


def test_finished_command_returns_its_exit_status() -> None:
    channel = ChattyChannel()
    channel.stdin_closed = True
    channel.exit_code = 2
    session = ParamikoSession(FakeClient(FakeTransport(channel)), "192.0.2.10")

    assert session.run("false", ".", lambda text: None, lambda: False) == 2


@pytest.mark.parametrize("transport", [None, FakeTransport(ChattyChannel(), active=False)], ids=["none", "inactive"])
def test_closed_transport_is_a_connection_error(transport) -> None:
    session = ParamikoSession(FakeClient(transport), "192.0.2.10")

    with pytest.raises(RemoteConnectionError):
        session.run("true", ".", lambda text: None, lambda: False)
