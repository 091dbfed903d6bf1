"""Reading of GBS FPGA bitstream files and the common bitstream interface."""

from __future__ import annotations

import io
import json
import os
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, BinaryIO

BITSTREAM_GUID1 = 0x414750466E6F6558
BITSTREAM_GUID2 = 0x31303076534247B7
FILE_HEADER_LENGTH = 20
MAX_METADATA_LENGTH = 4096
FILE_EXTENSION_GBS = ".gbs"

_HEADER = struct.Struct("<QQI")


class BitstreamError(Exception):
    """Raised when a bitstream file cannot be read or is malformed."""


def _normalize_uuid(value: str) -> str:
    return value.replace("-", "").lower()


class BitstreamFile(ABC):
    """Operations common to all supported bitstream file formats."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying file, if any."""

    @abstractmethod
    def raw_bitstream_reader(self) -> io.RawIOBase | None:
        """Return a reader over the raw bitstream data."""

    @abstractmethod
    def raw_bitstream_data(self) -> bytes:
        """Return the raw bitstream data."""

    @abstractmethod
    def interface_uuid(self) -> str:
        """Return the bitstream's interface UUID."""

    @abstractmethod
    def accelerator_type_uuid(self) -> str:
        """Return the bitstream's AFU UUID."""

    @abstractmethod
    def unique_uuid(self) -> str:
        """Return the UUID that uniquely identifies the bitstream."""

    @abstractmethod
    def install_path(self, root: str) -> str:
        """Return a unique file name for the bitstream below ``root``."""

    @abstractmethod
    def extra_metadata(self) -> dict[str, str]:
        """Return additional key/value metadata found in the bitstream."""

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass(frozen=True)
class Header:
    """Fixed-size header at the start of a GBS file."""

    guid1: int
    guid2: int
    metadata_length: int


class _SectionReader(io.RawIOBase):
    """Read-only, seekable view of a byte range of another file object."""

    def __init__(self, source: BinaryIO, offset: int, size: int) -> None:
        super().__init__()
        self._source = source
        self._offset = offset
        self._size = size
        self._pos = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            target = offset
        elif whence == io.SEEK_CUR:
            target = self._pos + offset
        elif whence == io.SEEK_END:
            target = self._size + offset
        else:
            raise ValueError(f"invalid whence {whence}")
        if target < 0:
            raise ValueError("negative seek position")
        self._pos = target
        return target

    def readinto(self, buffer) -> int:
        remaining = self._size - self._pos
        if remaining <= 0:
            return 0
        wanted = min(len(buffer), remaining)
        self._source.seek(self._offset + self._pos)
        chunk = self._source.read(wanted)
        buffer[: len(chunk)] = chunk
        self._pos += len(chunk)
        return len(chunk)


class Bitstream:
    """The raw bitstream data (RBF) stored in a GBS file."""

    def __init__(self, source: BinaryIO, offset: int, size: int) -> None:
        self._source = source
        self.offset = offset
        self.size = size

    def open(self) -> _SectionReader:
        """Return a new independent reader over the bitstream body."""
        return _SectionReader(self._source, self.offset, self.size)

    def data(self) -> bytes:
        """Read and return the whole bitstream body."""
        reader = self.open()
        chunks = []
        total = 0
        while total < self.size:
            chunk = reader.read(self.size - total)
            if not chunk:
                break
            chunks.append(chunk)
            total += len(chunk)
        data = b"".join(chunks)
        if len(data) != self.size:
            raise BitstreamError(
                f"unexpected EOF: read {len(data)} of {self.size} bitstream bytes"
            )
        return data


def _validate_metadata(metadata: Any) -> dict:
    if not isinstance(metadata, dict):
        raise BitstreamError("unable to parse GBS metadata: not a JSON object")
    afu_image = metadata.get("afu-image")
    if afu_image is None:
        return metadata
    if not isinstance(afu_image, dict):
        raise BitstreamError("unable to parse GBS metadata: afu-image is not an object")
    interface = afu_image.get("interface-uuid")
    if interface is not None and not isinstance(interface, str):
        raise BitstreamError("unable to parse GBS metadata: interface-uuid is not a string")
    clusters = afu_image.get("accelerator-clusters")
    if clusters is None:
        return metadata
    if not isinstance(clusters, list):
        raise BitstreamError(
            "unable to parse GBS metadata: accelerator-clusters is not a list"
        )
    for cluster in clusters:
        if not isinstance(cluster, dict):
            raise BitstreamError(
                "unable to parse GBS metadata: accelerator cluster is not an object"
            )
        type_uuid = cluster.get("accelerator-type-uuid")
        if type_uuid is not None and not isinstance(type_uuid, str):
            raise BitstreamError(
                "unable to parse GBS metadata: accelerator-type-uuid is not a string"
            )
    return metadata


def _decode_metadata(raw: bytes) -> dict:
    try:
        text = raw.decode("utf-8")
        value, _ = json.JSONDecoder().raw_decode(text.lstrip(" \t\r\n"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BitstreamError(f"unable to parse GBS metadata: {exc}") from exc
    return _validate_metadata(value)


def _afu_image(metadata: dict) -> dict:
    return metadata.get("afu-image") or {}


def _clusters(metadata: dict) -> list:
    return _afu_image(metadata).get("accelerator-clusters") or []


class FileGBS(BitstreamFile):
    """An open GBS file."""

    def __init__(self, header: Header, metadata: dict, bitstream: Bitstream) -> None:
        self.header = header
        self.metadata = metadata
        self.bitstream = bitstream
        self._closer: BinaryIO | None = None

    def close(self) -> None:
        """Close the file if it was opened by :func:`open_gbs`."""
        if self._closer is not None:
            closer, self._closer = self._closer, None
            closer.close()

    def interface_uuid(self) -> str:
        """Return the normalized interface UUID from the metadata."""
        return _normalize_uuid(_afu_image(self.metadata).get("interface-uuid") or "")

    def accelerator_type_uuid(self) -> str:
        """Return the normalized AFU UUID, or "" unless exactly one cluster exists."""
        clusters = _clusters(self.metadata)
        if len(clusters) != 1:
            return ""
        return _normalize_uuid(clusters[0].get("accelerator-type-uuid") or "")

    def raw_bitstream_reader(self) -> _SectionReader:
        return self.bitstream.open()

    def raw_bitstream_data(self) -> bytes:
        return self.bitstream.data()

    def unique_uuid(self) -> str:
        """For GBS files the unique identifier is the AFU UUID."""
        return self.accelerator_type_uuid()

    def install_path(self, root: str) -> str:
        interface_id = self.interface_uuid()
        unique_id = self.unique_uuid()
        if interface_id and unique_id:
            return os.path.join(root, interface_id, unique_id + FILE_EXTENSION_GBS)
        return ""

    def extra_metadata(self) -> dict[str, str]:
        return {"Size": str(self.bitstream.size)}


def parse_gbs(fileobj: BinaryIO) -> FileGBS:
    """Parse a GBS image from a seekable binary file object starting at offset 0."""
    try:
        fileobj.seek(0)
    except (OSError, ValueError) as exc:
        raise BitstreamError(f"unable to seek: {exc}") from exc

    raw_header = fileobj.read(_HEADER.size)
    if len(raw_header) != _HEADER.size:
        raise BitstreamError("unable to read header: unexpected EOF")
    header = Header(*_HEADER.unpack(raw_header))

    if header.guid1 != BITSTREAM_GUID1 or header.guid2 != BITSTREAM_GUID2:
        raise BitstreamError(
            f"wrong magic in GBS file: {header.guid1:#x} {header.guid2:#x} "
            f"Expected {BITSTREAM_GUID1:#x} {BITSTREAM_GUID2:#x}"
        )
    if header.metadata_length == 0 or header.metadata_length >= MAX_METADATA_LENGTH:
        raise BitstreamError(
            f"incorrect length of GBS metadata {header.metadata_length}"
        )

    fileobj.seek(FILE_HEADER_LENGTH)
    metadata = _decode_metadata(fileobj.read(header.metadata_length))
    clusters = len(_clusters(metadata))
    if clusters != 1:
        raise BitstreamError(
            f"incorrect length of AcceleratorClusters in GBS metadata: {clusters}"
        )

    try:
        end = fileobj.seek(0, io.SEEK_END)
    except (OSError, ValueError) as exc:
        raise BitstreamError(f"unable to determine file size: {exc}") from exc
    offset = FILE_HEADER_LENGTH + header.metadata_length
    size = end - offset
    if size < 0:
        raise BitstreamError("GBS file is shorter than its header and metadata")

    return FileGBS(header, metadata, Bitstream(fileobj, offset, size))


def open_gbs(name: str | os.PathLike) -> FileGBS:
    """Open the named GBS file; the result owns the file and must be closed."""
    fileobj = open(os.path.normpath(name), "rb")
    try:
        gbs = parse_gbs(fileobj)
    except BaseException:
        fileobj.close()
        raise
    gbs._closer = fileobj
    return gbs