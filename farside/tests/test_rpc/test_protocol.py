import json

import pytest

from farside.rpc.errors import EncodingError, ProtocolError
from farside.rpc.protocol import (
    decode_base64,
    decode_response,
    encode_base64,
    Method,
    mkdir_params,
    read_params,
    Request,
    ResponseKind,
    spawn_params,
    stat_params,
    write_params,
)


def test_request_line():
    line = Request(7, Method.STAT, stat_params("/tmp")).to_json_line()

    assert line.endswith("\n")
    assert line.count("\n") == 1
    assert json.loads(line) == {
        "id": 7,
        "method": "stat",
        "params": {"path": "/tmp", "follow_symlinks": True},
    }


def test_request_method_from_string():
    assert Request(1, "ls").method == Method.LS

    with pytest.raises(ValueError):
        Request(1, "chmod")


def test_request_escapes_newlines():
    line = Request(1, Method.LS, {"path": "/tmp/a\nb"}).to_json_line()

    assert line.count("\n") == 1
    assert json.loads(line)["params"]["path"] == "/tmp/a\nb"


def test_decode_ready():
    response = decode_response('{"ready": true, "version": "1.0.0", "pid": 12}')

    assert response.is_ready
    assert response.id is None
    assert response.payload["version"] == "1.0.0"
    assert not response.is_final()


def test_decode_data():
    response = decode_response('{"id": 3, "data": {"data": "YWJj"}}')

    assert response.kind == ResponseKind.DATA
    assert response.id == 3
    assert response.payload == {"data": "YWJj"}
    assert not response.is_final()


def test_decode_result():
    response = decode_response('{"id": 4, "result": {"exists": false}}')

    assert response.kind == ResponseKind.RESULT
    assert response.payload == {"exists": False}
    assert response.is_final()


def test_decode_null_result():
    response = decode_response('{"id": 4, "result": null}')

    assert response.kind == ResponseKind.RESULT
    assert response.payload is None


def test_decode_error():
    response = decode_response(
        '{"id": 5, "error": {"message": "No such file", "code": "ENOENT"}}'
    )

    assert response.kind == ResponseKind.ERROR
    assert response.payload["code"] == "ENOENT"
    assert response.is_final()


@pytest.mark.parametrize(
    "line",
    [
        "not json",
        "[1, 2, 3]",
        '"ready"',
        '{"result": {}}',
        '{"id": "1", "result": {}}',
        '{"id": true, "result": {}}',
        '{"id": 1}',
        '{"id": 1, "data": "YWJj"}',
        '{"id": 1, "error": "failed"}',
        '{"id": 1, "error": {"code": "EIO"}}',
    ],
)
def test_decode_malformed(line):
    with pytest.raises(ProtocolError):
        decode_response(line)


def test_base64():
    assert encode_base64(b"") == ""
    assert encode_base64(b"\x00\xffabc") == "AP9hYmM="
    assert decode_base64("AP9hYmM=") == b"\x00\xffabc"


def test_base64_malformed():
    with pytest.raises(EncodingError):
        decode_base64("not base64!")

    with pytest.raises(ValueError):
        decode_base64("YWJ")


def test_param_builders():
    assert read_params("/a") == {"path": "/a"}
    assert read_params("/a", 10, 20) == {"path": "/a", "offset": 10, "length": 20}
    assert stat_params("/a", follow_symlinks=False)["follow_symlinks"] is False
    assert write_params("/a", b"abc") == {"path": "/a", "data": "YWJj"}
    assert mkdir_params("/a") == {"path": "/a"}
    assert mkdir_params("/a", parents=True) == {"path": "/a", "parents": True}
    assert spawn_params("ls", ["-l"], "/tmp") == {
        "cmd": "ls",
        "args": ["-l"],
        "cwd": "/tmp",
    }
    assert spawn_params("true") == {"cmd": "true", "args": []}


@pytest.mark.parametrize(
    "data", [b"", b"\x00", bytes(range(256)), "héllo".encode(), b"\n\r\t" * 100]
)
def test_base64_roundtrip(data):
    assert decode_base64(encode_base64(data)) == data
