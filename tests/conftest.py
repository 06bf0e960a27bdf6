# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for sam_to_fastq testing.

This module provides shared fixtures for building pysam records, writing small
unaligned BAM files with read group headers, and reading FASTQ output back.
"""

import gzip
import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# SAM flag bits
PAIRED = 0x1
UNMAPPED = 0x4
MATE_UNMAPPED = 0x8
REVERSE = 0x10
READ1 = 0x40
READ2 = 0x80
SECONDARY = 0x100
QCFAIL = 0x200
SUPPLEMENTARY = 0x800


def make_read(
    name: str = "read",
    seq: str = "ACGTACGTAC",
    qual: str | None = None,
    flag: int = UNMAPPED,
    tags: dict[str, Any] | None = None,
) -> pysam.AlignedSegment:
    """Build a standalone AlignedSegment. Qualities default to 'I' per base."""
    read = pysam.AlignedSegment()
    read.query_name = name
    read.query_sequence = seq
    read.query_qualities = pysam.qualitystring_to_array(qual if qual is not None else "I" * len(seq))
    read.flag = flag
    for tag, value in (tags or {}).items():
        read.set_tag(tag, value)
    return read


def pair_flags(mate: int, reverse: bool = False) -> int:  # noqa: FBT001, FBT002
    """Flags of an unmapped paired read; `mate` is 1 or 2."""
    flag = PAIRED | UNMAPPED | MATE_UNMAPPED | (READ1 if mate == 1 else READ2)
    return flag | REVERSE if reverse else flag


def read_fastq(path: Path) -> list[tuple[str, str, str, str]]:
    """Parse a (possibly gzipped) FASTQ into 4-line tuples."""
    opener = gzip.open if str(path).endswith(".gz") else open
    with opener(path, "rt") as fh:
        lines = fh.read().splitlines()
    assert len(lines) % 4 == 0, f"{path} does not hold whole 4-line records"
    return [tuple(lines[i : i + 4]) for i in range(0, len(lines), 4)]


def create_bam_header(read_groups: list[dict[str, str]] | None = None) -> dict[str, Any]:
    """Header of an unaligned BAM: no @SQ lines, optional @RG lines."""
    header: dict[str, Any] = {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "PG": [{"ID": "test", "PN": "sam_to_fastq_test", "VN": "0.1.0"}],
    }
    if read_groups:
        header["RG"] = read_groups
    return header


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def write_bam(temp_dir: Path) -> Callable[..., Path]:
    """Factory writing reads to an unaligned BAM in `temp_dir`."""

    def _write(
        reads: list[pysam.AlignedSegment],
        read_groups: list[dict[str, str]] | None = None,
        name: str = "input.bam",
    ) -> Path:
        bam_path = temp_dir / name
        with pysam.AlignmentFile(str(bam_path), "wb", header=create_bam_header(read_groups)) as bam:
            for read in reads:
                bam.write(read)
        return bam_path

    return _write


@pytest.fixture
def two_read_groups() -> list[dict[str, str]]:
    return [
        {"ID": "rg1", "PU": "FLOWCELL.1", "SM": "sample"},
        {"ID": "rg2", "PU": "FLOWCELL.2", "SM": "sample"},
    ]


@pytest.fixture
def paired_reads() -> list[pysam.AlignedSegment]:
    """Two fragments, mates arriving out of order, plus one unpaired read."""
    return [
        make_read("frag1", "AAAACCCC", "ABCDEFGH", pair_flags(2)),
        make_read("frag2", "GGGGTTTT", "IIIIHHHH", pair_flags(1)),
        make_read("single", "ACGT", "IIII", UNMAPPED),
        make_read("frag1", "TTTTGGGG", "HGFEDCBA", pair_flags(1)),
        make_read("frag2", "CCCCAAAA", "HHHHIIII", pair_flags(2, reverse=True)),
    ]


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
