"""Reading of AOCX (OpenCL) FPGA bitstream files, which are ELF containers."""

from __future__ import annotations

import gzip
import io
import os
import struct
import zlib
from dataclasses import dataclass, field
from typing import BinaryIO

from fpgakit.bitstream.gbs import BitstreamError, BitstreamFile, FileGBS, parse_gbs

OPENCL_UUID = "18b79ffa2ee54aa096ef4230dafacb5f"
FILE_EXTENSION_AOCX = ".aocx"

_SHT_STRTAB = 3
_SHT_NOBITS = 8
_SHN_XINDEX = 0xFFFF

_FIELD_SECTIONS = {
    ".acl.autodiscovery": "auto_discovery",
    ".acl.autodiscovery.xml": "auto_discovery_xml",
    ".acl.board": "board",
    ".acl.board_package": "board_package",
    ".acl.board_spec.xml": "board_spec_xml",
    ".acl.compilation_env": "compilation_environment",
    ".acl.rand_hash": "hash",
    ".acl.kernel_arg_info.xml": "kernel_arg_info_xml",
    ".acl.quartus_input_hash": "quartus_input_hash",
    ".acl.quartus_report": "quartus_report",
    ".acl.target": "target",
    ".acl.version": "version",
}


def _read_exact(source: BinaryIO, offset: int, size: int) -> bytes:
    source.seek(offset)
    data = source.read(size)
    if len(data) != size:
        raise BitstreamError(f"unexpected EOF reading {size} bytes at offset {offset}")
    return data


@dataclass
class _Section:
    name: str
    type: int
    offset: int
    size: int
    source: BinaryIO = field(repr=False)

    def data(self) -> bytes:
        if self.type == _SHT_NOBITS:
            raise BitstreamError(f"unexpected read from SHT_NOBITS section {self.name}")
        return _read_exact(self.source, self.offset, self.size)


def _section_name(table: bytes, offset: int) -> str:
    if offset >= len(table):
        raise BitstreamError(f"bad section name index {offset}")
    end = table.find(b"\0", offset)
    if end < 0:
        raise BitstreamError(f"bad section name index {offset}")
    return table[offset:end].decode("utf-8", errors="replace")


def _parse_elf(source: BinaryIO) -> list[_Section]:
    ident = _read_exact(source, 0, 16)
    if ident[:4] != b"\x7fELF":
        raise BitstreamError(f"bad magic number {ident[:4]!r}")
    if ident[4] == 1:
        is64 = False
    elif ident[4] == 2:
        is64 = True
    else:
        raise BitstreamError(f"unknown ELF class {ident[4]}")
    if ident[5] == 1:
        endian = "<"
    elif ident[5] == 2:
        endian = ">"
    else:
        raise BitstreamError(f"unknown ELF data encoding {ident[5]}")
    if ident[6] != 1:
        raise BitstreamError(f"unknown ELF version {ident[6]}")

    header = struct.Struct(endian + ("HHIQQQIHHHHHH" if is64 else "HHIIIIIHHHHHH"))
    section = struct.Struct(endian + ("IIQQQQIIQQ" if is64 else "IIIIIIIIII"))
    fields = header.unpack(_read_exact(source, 16, header.size))
    shoff, shentsize, shnum, shstrndx = fields[5], fields[10], fields[11], fields[12]

    if shoff == 0:
        return []
    if shentsize < section.size:
        raise BitstreamError(f"invalid ELF shentsize {shentsize}")
    if shnum == 0 or shstrndx == _SHN_XINDEX:
        first = section.unpack(_read_exact(source, shoff, section.size))
        if shnum == 0:
            shnum = first[5]
        if shstrndx == _SHN_XINDEX:
            shstrndx = first[6]
    if shstrndx >= shnum:
        raise BitstreamError(f"invalid ELF shstrndx {shstrndx}")

    raw_headers = [
        section.unpack(_read_exact(source, shoff + i * shentsize, section.size))
        for i in range(shnum)
    ]
    sections = [
        _Section("", raw[1], raw[4], raw[5], source) for raw in raw_headers
    ]
    strtab = sections[shstrndx]
    if strtab.type != _SHT_STRTAB:
        raise BitstreamError(f"invalid ELF section name string table type {strtab.type}")
    names = strtab.data()
    for raw, sec in zip(raw_headers, sections):
        sec.name = _section_name(names, raw[0])
    return sections


def _parse_fpga_bin(data: bytes) -> FileGBS:
    try:
        sections = _parse_elf(io.BytesIO(data))
    except BitstreamError as exc:
        raise BitstreamError(f"unable to open file: {exc}") from exc
    gz = next((s for s in sections if s.name == ".acl.gbs.gz"), None)
    if gz is None:
        raise BitstreamError("no .acl.gbs.gz section in .acl.fpga.bin")
    try:
        payload = gzip.decompress(gz.data())
    except (OSError, EOFError, zlib.error, BitstreamError) as exc:
        raise BitstreamError(f"unable to uncompress .acl.gbs.gz: {exc}") from exc
    gbs = parse_gbs(io.BytesIO(payload))
    afu_uuid = gbs.accelerator_type_uuid()
    if afu_uuid != OPENCL_UUID:
        gbs.close()
        raise BitstreamError(f"incorrect OpenCL BSP AFU UUID ({afu_uuid})")
    return gbs


@dataclass(eq=False)
class FileAOCX(BitstreamFile):
    """An open AOCX file."""

    auto_discovery: str = ""
    auto_discovery_xml: str = ""
    board: str = ""
    board_package: str = ""
    board_spec_xml: str = ""
    compilation_environment: str = ""
    hash: str = ""
    kernel_arg_info_xml: str = ""
    quartus_input_hash: str = ""
    quartus_report: str = ""
    target: str = ""
    version: str = ""
    gbs: FileGBS | None = None
    _closer: BinaryIO | None = field(default=None, repr=False)

    def _set_section(self, section: _Section) -> None:
        if section.name == ".acl.fpga.bin":
            try:
                data = section.data()
            except BitstreamError as exc:
                raise BitstreamError(f"unable to read .acl.fpga.bin: {exc}") from exc
            self.gbs = None
            try:
                self.gbs = _parse_fpga_bin(data)
            except BitstreamError as exc:
                raise BitstreamError(f"unable to parse gbs: {exc}") from exc
            return
        attribute = _FIELD_SECTIONS.get(section.name)
        if attribute is None:
            return
        try:
            data = section.data()
        except BitstreamError as exc:
            raise BitstreamError(
                f"{section.name}: unable to get section data: {exc}"
            ) from exc
        setattr(self, attribute, data.decode("utf-8", errors="replace").strip())

    def close(self) -> None:
        """Close the file if it was opened by :func:`open_aocx`."""
        if self._closer is not None:
            closer, self._closer = self._closer, None
            closer.close()

    def raw_bitstream_reader(self) -> io.RawIOBase | None:
        if self.gbs is not None:
            return self.gbs.bitstream.open()
        return None

    def raw_bitstream_data(self) -> bytes:
        if self.gbs is not None:
            return self.gbs.bitstream.data()
        raise BitstreamError("GBS section not found")

    def unique_uuid(self) -> str:
        """For AOCX files the unique identifier is the random hash."""
        return self.hash

    def interface_uuid(self) -> str:
        return self.gbs.interface_uuid() if self.gbs is not None else ""

    def accelerator_type_uuid(self) -> str:
        return self.gbs.accelerator_type_uuid() if self.gbs is not None else ""

    def install_path(self, root: str) -> str:
        interface_id = self.interface_uuid()
        unique_id = self.unique_uuid()
        if interface_id and unique_id:
            return os.path.join(root, interface_id, unique_id + FILE_EXTENSION_AOCX)
        return ""

    def extra_metadata(self) -> dict[str, str]:
        if self.gbs is None:
            raise BitstreamError("GBS section not found")
        return {
            "Board": self.board,
            "Target": self.target,
            "Hash": self.hash,
            "Version": self.version,
            "Size": str(self.gbs.bitstream.size),
        }


def parse_aocx(fileobj: BinaryIO) -> FileAOCX:
    """Parse an AOCX ELF image from a seekable binary file object."""
    try:
        sections = _parse_elf(fileobj)
    except BitstreamError as exc:
        raise BitstreamError(f"unable to read header: {exc}") from exc
    aocx = FileAOCX()
    for section in sections:
        aocx._set_section(section)
    return aocx


def open_aocx(name: str | os.PathLike) -> FileAOCX:
    """Open the named AOCX file; the result owns the file and must be closed."""
    fileobj = open(name, "rb")
    try:
        aocx = parse_aocx(fileobj)
    except BaseException:
        fileobj.close()
        raise
    aocx._closer = fileobj
    return aocx