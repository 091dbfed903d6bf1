"""Lookup of FPGA bitstreams in a storage directory and format detection."""

from __future__ import annotations

import os

from fpgakit.bitstream.aocx import FILE_EXTENSION_AOCX, open_aocx
from fpgakit.bitstream.gbs import (
    FILE_EXTENSION_GBS,
    BitstreamError,
    BitstreamFile,
    open_gbs,
)

_SEARCH_ORDER = (FILE_EXTENSION_GBS, FILE_EXTENSION_AOCX)


def _extension(fname: str | os.PathLike) -> str:
    base = os.path.basename(os.fspath(fname))
    dot = base.rfind(".")
    return base[dot:] if dot >= 0 else ""


def get_fpga_bitstream(
    bitstream_dir: str | os.PathLike, region: str, afu: str
) -> BitstreamFile:
    """Return the first bitstream stored for ``region`` and ``afu``.

    GBS files are preferred over AOCX files.
    """
    for ext in _SEARCH_ORDER:
        path = os.path.join(bitstream_dir, region, afu + ext)
        try:
            os.stat(path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise BitstreamError(f"{path}: stat error: {exc}") from exc
        return open_bitstream(path)
    raise BitstreamError(f"{region}/{afu}: bitstream not found")


def open_bitstream(fname: str | os.PathLike) -> BitstreamFile:
    """Open a bitstream file, choosing the format from the file name extension."""
    ext = _extension(fname)
    if ext == FILE_EXTENSION_GBS:
        return open_gbs(fname)
    if ext == FILE_EXTENSION_AOCX:
        return open_aocx(fname)
    raise BitstreamError(f"unsupported file format {os.fspath(fname)}")