import pytest

from netspeed.config import Iperf3Config, load_config

CONFIG = """
paths:
  data_dir: state
iperf3:
  port: 5301
  gateway_streams: 2
collector:
  enabled: false
gateway:
  host: 10.0.0.1
targets:
  - host: 10.0.0.20
    name: Lab switch
    trusted: true
"""


def test_load_config_reads_sections_and_creates_dirs(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG, encoding="utf-8")

    config = load_config(str(path))

    assert config.paths.data_dir == (tmp_path / "state").resolve()
    assert config.paths.data_dir.is_dir()
    assert config.paths.logs_dir.is_dir()
    assert config.iperf3.port == 5301
    assert config.iperf3.duration == 10
    assert not config.collector.enabled
    assert config.correlation.merge_window_seconds == 60
    assert config.targets[0].name == "Lab switch"
    assert config.targets[0].trusted
    assert config.gateway_binary_path == config.paths.bin_dir / "cfspeedtest-linux-arm64"


def test_missing_config_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.yaml"))


def test_unknown_keys_are_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("iperf3:\n  bogus: 1\n", encoding="utf-8")
    with pytest.raises(TypeError):
        load_config(str(path))


def test_streams_depend_on_device_type():
    config = Iperf3Config(gateway_streams=2, device_streams=3, default_streams=4)
    assert config.streams_for("Gateway") == 2
    assert config.streams_for("device") == 3
    assert config.streams_for("server") == 4
    assert config.streams_for(None) == 4
