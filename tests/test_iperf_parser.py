import json

import pytest

from netspeed.errors import MeasurementError, ParseError
from netspeed.speedtests.iperf_parser import (
    BraceStreamParser,
    decode_server_record,
    parse_client_output,
    parse_site_id,
)


def client_payload(sent_bps=380e6, received_bps=379e6, retransmits=2, local="10.0.0.2", error=None):
    payload = {
        "start": {"connected": [{"local_host": local, "remote_host": "10.0.0.5"}]},
        "end": {
            "sum_sent": {"bits_per_second": sent_bps, "bytes": 475_000_000, "retransmits": retransmits},
            "sum_received": {"bits_per_second": received_bps, "bytes": 474_000_000},
        },
    }
    if error:
        payload["error"] = error
    return json.dumps(payload)


def server_record(received=0.0, sent=0.0, reverse=None, peer="192.168.1.50", extra=None, error=None):
    end = {
        "sum_received": {"bits_per_second": received, "bytes": 1000},
        "sum_sent": {"bits_per_second": sent, "bytes": 2000, "retransmits": 3},
    }
    if reverse is not None:
        end["sum_sent_bidir_reverse"] = {"bits_per_second": reverse, "bytes": 3000, "retransmits": 7}
    payload = {
        "start": {
            "connected": [{"remote_host": peer, "local_host": "192.168.1.10"}] if peer else [],
            "test_start": {"duration": 5, "num_streams": 4},
        },
        "end": end,
    }
    if extra is not None:
        payload["extra_data"] = extra
    if error:
        payload["error"] = error
    return json.dumps(payload)


def test_stream_parser_discards_text_between_records():
    parser = BraceStreamParser()
    records = parser.feed('foo{"a":1,"b":{"c":2}}bar{"d":3}')
    assert records == ['{"a":1,"b":{"c":2}}', '{"d":3}']
    assert not parser.pending


def test_stream_parser_chunk_boundaries_do_not_matter():
    whole = BraceStreamParser().feed('{"a":1}')
    for split in range(1, len('{"a":1}')):
        parser = BraceStreamParser()
        first = parser.feed('{"a":1}'[:split])
        second = parser.feed('{"a":1}'[split:])
        assert first == []
        assert second == whole


def test_stream_parser_handles_multiline_records_with_interleaved_diagnostics():
    parser = BraceStreamParser()
    chunks = ["-----------\nServer listening on 5201\n{\n", '  "start": {\n    "x": 1\n', "  }\n}\nAccepted connection\n"]
    records = [record for chunk in chunks for record in parser.feed(chunk)]
    assert len(records) == 1
    assert json.loads(records[0]) == {"start": {"x": 1}}


def test_stream_parser_ignores_stray_closing_brace():
    parser = BraceStreamParser()
    assert parser.feed('}} noise {"ok":true}') == ['{"ok":true}']


def test_parse_client_download_reads_received_summary():
    measurement = parse_client_output(client_payload(received_bps=450e6, retransmits=0), reverse=True)
    assert measurement.success
    assert measurement.mbps == pytest.approx(450)
    assert measurement.bytes == 474_000_000
    assert measurement.retransmits == 0
    assert measurement.local_address == "10.0.0.2"


def test_parse_client_upload_reads_sent_summary():
    measurement = parse_client_output(client_payload(sent_bps=380e6, retransmits=2), reverse=False)
    assert measurement.mbps == pytest.approx(380)
    assert measurement.retransmits == 2


def test_parse_client_error_field_is_a_measurement_error():
    with pytest.raises(MeasurementError) as excinfo:
        parse_client_output(client_payload(error="unable to connect to server"), reverse=True)
    assert "unable to connect" in str(excinfo.value)


def test_parse_client_rejects_garbage():
    with pytest.raises(ParseError):
        parse_client_output("iperf3: error - not json", reverse=False)


@pytest.mark.parametrize("extra,expected", [("1001", "1001"), ("siteId=1001", "1001"), ("site=42", "42"), ("hello", None), (None, None)])
def test_parse_site_id(extra, expected):
    assert parse_site_id(extra) == expected


def test_decode_server_record_maps_directions_from_server_side():
    report = decode_server_record(server_record(received=200e6, sent=0.0, extra="site=7"), "default")
    assert report.peer_address == "192.168.1.50"
    assert report.local_address == "192.168.1.10"
    assert report.scope_id == "7"
    assert report.download_bps == 200e6
    assert report.upload_bps == 0.0
    assert report.duration_seconds == 5
    assert report.parallel_streams == 4


def test_decode_server_record_prefers_nonzero_bidir_reverse():
    report = decode_server_record(server_record(received=100e6, sent=5e6, reverse=300e6), "default")
    assert report.upload_bps == 300e6
    assert report.upload_bytes == 3000
    assert report.upload_retransmits == 7


def test_decode_server_record_ignores_zero_bidir_reverse():
    report = decode_server_record(server_record(received=100e6, sent=5e6, reverse=0.0), "default")
    assert report.upload_bps == 5e6
    assert report.scope_id == "default"


@pytest.mark.parametrize(
    "raw",
    [
        server_record(received=100e6, error="the client has unexpectedly closed the connection"),
        server_record(received=0.0, sent=0.0),
        server_record(received=100e6, peer=None),
        "{not json}",
    ],
)
def test_decode_server_record_discards_unusable_records(raw):
    assert decode_server_record(raw, "default") is None
