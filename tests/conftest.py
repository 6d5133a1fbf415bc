# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for filter_bam_pairs testing.

This module provides shared fixtures for testing filter_bam_pairs.py: mock
aligned segments, name-sorted SAM/BAM files with known pairs, and a loguru
sink that captures log messages for assertions.
"""

import random
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

# Now we can import the modules we're testing
from filter_bam_pairs import FilterConfig

READ_LEN = 60


def random_sequence(length: int, seed: int) -> str:
    """Reproducible pseudo-random DNA; a repeated 21-mer is practically impossible."""
    rng = random.Random(seed)
    return "".join(rng.choice("ACGT") for _ in range(length))


class MockAlignedSegment:
    """Mock AlignedSegment carrying only what the pair filter reads."""

    def __init__(
        self,
        query_name: str = "test_read",
        query_sequence: str | None = "ATCGATCGATCG",
        cigartuples: list[tuple[int, int]] | None = None,
    ) -> None:
        self.query_name = query_name
        self.query_sequence = query_sequence
        self.cigartuples = cigartuples


class ListSink:
    """Output sink that records every written read in order."""

    def __init__(self) -> None:
        self.reads: list[Any] = []

    def write(self, read: Any) -> None:
        self.reads.append(read)

    @property
    def names(self) -> list[str]:
        return [read.query_name for read in self.reads]


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def sink() -> ListSink:
    return ListSink()


@pytest.fixture
def default_config() -> FilterConfig:
    """Default filter settings: complexity 0.8, contiguity filter off."""
    return FilterConfig()


@pytest.fixture
def strict_config() -> FilterConfig:
    """Both filters active."""
    return FilterConfig(complexity_cutoff=0.8, min_mapped=10)


@pytest.fixture
def complex_pair() -> tuple[MockAlignedSegment, MockAlignedSegment]:
    """A pair that passes both filters at 0.8 / 10."""
    return (
        MockAlignedSegment("pairA", random_sequence(READ_LEN, 1), [(0, READ_LEN)]),
        MockAlignedSegment("pairA", random_sequence(READ_LEN, 2), [(0, READ_LEN)]),
    )


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Capture loguru messages at WARNING and above."""
    from loguru import logger

    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(str(m)), level="WARNING")
    yield messages
    logger.remove(handler_id)


def create_sam_header() -> dict[str, Any]:
    """Create a minimal name-sorted SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": "queryname"},
        "SQ": [{"SN": "test_reference", "LN": 1000}],
        "PG": [{"ID": "test", "PN": "filter_bam_pairs_test", "VN": "0.1.0"}],
    }


ReadSpec = tuple[str, str, list[tuple[int, int]]]


def write_alignment(path: Path, reads: list[ReadSpec]) -> Path:
    """Write (qname, sequence, cigartuples) records, in order, to SAM or BAM."""
    mode = "wb" if path.suffix == ".bam" else "w"
    with pysam.AlignmentFile(str(path), mode, header=create_sam_header()) as out:
        for i, (qname, seq, cigar) in enumerate(reads):
            read = pysam.AlignedSegment(out.header)
            read.query_name = qname
            read.query_sequence = seq
            read.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
            read.cigartuples = cigar
            read.reference_id = 0
            read.reference_start = 100 + i
            read.mapping_quality = 60
            read.flag = 65 if i % 2 == 0 else 129  # paired, first/second in pair
            out.write(read)
    return path


@pytest.fixture
def make_alignment(temp_dir: Path) -> Callable[[str, list[ReadSpec]], Path]:
    """Factory writing an alignment file with the given records into temp_dir."""

    def _make(name: str, reads: list[ReadSpec]) -> Path:
        return write_alignment(temp_dir / name, reads)

    return _make


@pytest.fixture
def three_pair_reads() -> list[ReadSpec]:
    """
    Pair A passes both filters, pair B fails complexity on one mate only,
    pair C fails the contiguity threshold (10) on both mates.
    """
    broken = [(0, 8), (1, 2), (0, 8), (2, 3), (0, 8), (4, 34)]  # longest run 8
    return [
        ("pairA", random_sequence(READ_LEN, 1), [(0, READ_LEN)]),
        ("pairA", random_sequence(READ_LEN, 2), [(0, READ_LEN)]),
        ("pairB", random_sequence(READ_LEN, 3), [(0, READ_LEN)]),
        ("pairB", "A" * READ_LEN, [(0, READ_LEN)]),
        ("pairC", random_sequence(READ_LEN, 5), broken),
        ("pairC", random_sequence(READ_LEN, 6), broken),
    ]


@pytest.fixture
def three_pair_bam(make_alignment, three_pair_reads) -> Path:
    return make_alignment("three_pairs.bam", three_pair_reads)


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
