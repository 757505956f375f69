from conftest import FakeExecutor
from netspeed.cache import ScopedCache
from netspeed.remote import CommandResult
from netspeed.speedtests.models import TargetPlatform, TestTarget
from netspeed.speedtests.platform import OsDetector, PosixCommands, WindowsCommands, commands_for


def test_posix_start_detection():
    assert PosixCommands.started("[1] 4711\n4711\n")
    assert not PosixCommands.started("")
    assert not PosixCommands.started("nohup: failed to run command")


def test_windows_start_detection():
    assert WindowsCommands.started("started:5120\r\n")
    assert not WindowsCommands.started("failed:9")


def test_commands_for_platform():
    assert isinstance(commands_for(TargetPlatform.WINDOWS), WindowsCommands)
    assert isinstance(commands_for(TargetPlatform.POSIX), PosixCommands)


def test_posix_start_uses_custom_binary():
    command = PosixCommands().start_server(5201, "/opt/iperf3/bin/iperf3")
    assert command.startswith("nohup /opt/iperf3/bin/iperf3 -s -p 5201 ")


def test_unknown_os_defaults_to_posix_and_is_cached():
    executor = FakeExecutor({"uname": CommandResult(False, ""), "pwsh": CommandResult(False, "")})
    detector = OsDetector(executor, ScopedCache())
    target = TestTarget(host="10.0.0.9")
    assert detector.detect(target) is TargetPlatform.POSIX
    assert detector.detect(target) is TargetPlatform.POSIX
    assert len(executor.commands) == 2


def test_binary_override_skips_lookup():
    executor = FakeExecutor()
    detector = OsDetector(executor, ScopedCache())
    target = TestTarget(host="10.0.0.9", binary_path="C:\\iperf\\iperf3.exe")
    assert detector.binary_path(target, WindowsCommands()) == "C:\\iperf\\iperf3.exe"
    assert detector.binary_path(TestTarget(host="10.0.0.9"), PosixCommands()) is None
    assert executor.commands == []


def test_windows_lookup_is_cached():
    executor = FakeExecutor({"where iperf3": CommandResult(True, "C:\\tools\\iperf3.exe\r\nC:\\old\\iperf3.exe\r\n")})
    detector = OsDetector(executor, ScopedCache())
    target = TestTarget(host="10.0.0.9")
    assert detector.binary_path(target, WindowsCommands()) == "C:\\tools\\iperf3.exe"
    detector.binary_path(target, WindowsCommands())
    assert executor.commands == ["where iperf3 2>nul"]
