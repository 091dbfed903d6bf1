import io
import json
import os
import struct

import pytest

from fpgakit.bitstream.gbs import (
    BITSTREAM_GUID1,
    BITSTREAM_GUID2,
    BitstreamError,
    FileGBS,
    Header,
    open_gbs,
    parse_gbs,
)

INTERFACE_UUID = "69528db6eb31577a8c3668f9faa081f6"
TYPE_UUID = "d8424dc4a4a3c413f89e433683f9040b"


def dashed(uuid):
    return f"{uuid[:8]}-{uuid[8:12]}-{uuid[12:16]}-{uuid[16:20]}-{uuid[20:]}".upper()


def make_gbs(
    payload=b"\x42",
    metadata=None,
    guid1=BITSTREAM_GUID1,
    guid2=BITSTREAM_GUID2,
    metadata_length=None,
):
    if metadata is None:
        metadata = {
            "version": 1,
            "afu-image": {
                "interface-uuid": dashed(INTERFACE_UUID),
                "power": 0,
                "accelerator-clusters": [
                    {
                        "accelerator-type-uuid": dashed(TYPE_UUID),
                        "name": "nlb0",
                        "total-contexts": 1,
                    }
                ],
            },
        }
    raw = metadata if isinstance(metadata, bytes) else json.dumps(metadata).encode()
    length = len(raw) if metadata_length is None else metadata_length
    return struct.pack("<QQI", guid1, guid2, length) + raw + payload


@pytest.fixture
def gbs_path(tmp_path):
    directory = tmp_path / "intel.com" / "fpga" / INTERFACE_UUID
    directory.mkdir(parents=True)
    path = directory / (TYPE_UUID + ".gbs")
    path.write_bytes(make_gbs())
    return path


def test_open_gbs_correct(gbs_path):
    gbs = open_gbs(gbs_path)
    try:
        assert gbs.header.guid1 == BITSTREAM_GUID1
        assert gbs.header.guid2 == BITSTREAM_GUID2
    finally:
        gbs.close()


def test_open_gbs_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        open_gbs(tmp_path / "itdoesntexist.gbs")


def test_file_gbs_methods(gbs_path):
    gbs = open_gbs(gbs_path)
    reader = gbs.raw_bitstream_reader()
    assert reader.read() == b"\x42"
    assert gbs.raw_bitstream_data() == b"\x42"
    assert gbs.interface_uuid() == INTERFACE_UUID
    assert gbs.install_path("") == os.path.join(INTERFACE_UUID, TYPE_UUID) + ".gbs"
    assert gbs.accelerator_type_uuid() == TYPE_UUID
    assert gbs.extra_metadata() == {"Size": "1"}
    gbs.close()
    assert gbs._closer is None


def test_unique_uuid_is_afu_id():
    gbs = parse_gbs(io.BytesIO(make_gbs()))
    assert gbs.unique_uuid() == gbs.accelerator_type_uuid() == TYPE_UUID


def test_install_path_with_root():
    gbs = parse_gbs(io.BytesIO(make_gbs()))
    assert gbs.install_path("/srv") == os.path.join("/srv", INTERFACE_UUID, TYPE_UUID + ".gbs")


def test_install_path_empty_without_interface():
    metadata = {"afu-image": {"accelerator-clusters": [{"accelerator-type-uuid": TYPE_UUID}]}}
    gbs = parse_gbs(io.BytesIO(make_gbs(metadata=metadata)))
    assert gbs.interface_uuid() == ""
    assert gbs.install_path("/srv") == ""


def test_header_fields():
    data = make_gbs()
    gbs = parse_gbs(io.BytesIO(data))
    assert gbs.header == Header(BITSTREAM_GUID1, BITSTREAM_GUID2, len(data) - 21)


def test_reader_seek_and_independence():
    payload = b"abcdefgh"
    gbs = parse_gbs(io.BytesIO(make_gbs(payload=payload)))
    first = gbs.raw_bitstream_reader()
    second = gbs.raw_bitstream_reader()
    assert first.read(3) == b"abc"
    assert second.read(2) == b"ab"
    first.seek(-2, io.SEEK_END)
    assert first.read() == b"gh"
    assert first.tell() == len(payload)
    assert second.read() == b"cdefgh"


def test_bitstream_size_matches_payload():
    payload = bytes(range(50))
    gbs = parse_gbs(io.BytesIO(make_gbs(payload=payload)))
    assert gbs.bitstream.size == len(payload)
    assert gbs.bitstream.data() == payload


def test_wrong_magic():
    with pytest.raises(BitstreamError, match="wrong magic"):
        parse_gbs(io.BytesIO(make_gbs(guid1=1)))


def test_short_header():
    with pytest.raises(BitstreamError, match="unable to read header"):
        parse_gbs(io.BytesIO(b"\x00" * 10))


@pytest.mark.parametrize("length", [0, 4096])
def test_bad_metadata_length(length):
    with pytest.raises(BitstreamError, match="incorrect length of GBS metadata"):
        parse_gbs(io.BytesIO(make_gbs(metadata_length=length)))


def test_bad_metadata_json():
    with pytest.raises(BitstreamError, match="unable to parse GBS metadata"):
        parse_gbs(io.BytesIO(make_gbs(metadata=b'{"corrupted json":}')))


def test_wrong_cluster_count():
    metadata = {
        "afu-image": {
            "accelerator-clusters": [
                {"accelerator-type-uuid": TYPE_UUID},
                {"accelerator-type-uuid": TYPE_UUID},
            ]
        }
    }
    with pytest.raises(BitstreamError, match="AcceleratorClusters"):
        parse_gbs(io.BytesIO(make_gbs(metadata=metadata)))


def test_context_manager_closes(gbs_path):
    with open_gbs(gbs_path) as gbs:
        assert isinstance(gbs, FileGBS)
        handle = gbs._closer
    assert handle.closed