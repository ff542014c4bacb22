from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path

import pytest

from dat_ledger.ingest import DatExtractor, DatFileSource, extract_records, parse_dat_bytes, parse_dat_file
from dat_ledger.ingest.extractor import find_transaction_id
from dat_ledger.ingest.shapes import ALTERNATIVE_SHAPE, PRIMARY_SHAPE, match_first
from dat_ledger.models import FailureReason, FileParseStats, ParseFailure, RawLine, TransactionRecord
from tests.helpers.dat import dat_line, write_dat


def _raw(lines: list[str], filename: str = "T.DAT") -> list[RawLine]:
    return [RawLine(text=t, filename=filename, line_number=i) for i, t in enumerate(lines, start=1)]


def test_primary_line_yields_canonical_record():
    parsed = parse_dat_bytes(dat_line().encode(), "A.DAT")

    assert parsed.failures == []
    assert parsed.records == [
        TransactionRecord(
            transaction_date="2025-07-10",
            transaction_time="14:30:15",
            amount=Decimal("150.40"),
            mobile_number="0812308818",
            transaction_id="NAM0SVFGY9QB",
        )
    ]
    assert parsed.stats.successful_matches == 1
    assert parsed.stats.alternative_matches == 0
    assert parsed.stats.records_emitted == 1


def test_primary_shape_wins_when_both_fit():
    segment = "20250710" + "00000000000000015040" + "0812308818"
    assert PRIMARY_SHAPE.match(segment) is not None
    assert ALTERNATIVE_SHAPE.match(segment) is not None

    m = match_first(segment)
    assert m is not None and m.shape is PRIMARY_SHAPE
    assert (m.amount_raw, m.mobile_raw) == ("00000000000000015040", "0812308818")

    line = f"CPY 0001 AUTH CANCELLED {segment} 20250710143015INTERNET"
    parsed = parse_dat_bytes(line.encode(), "P.DAT")
    assert parsed.records[0].amount == Decimal("150.40")
    assert parsed.records[0].mobile_number == "0812308818"
    assert parsed.stats.successful_matches == 1
    assert parsed.stats.alternative_matches == 0


def test_alternative_shape_counts_separately():
    # 16-digit amount and 9-digit mobile only fit the looser layout
    line = "CPY 0002 AUTH CANCELLED 20250711 0000000000002500 081230881 20250711090000INTERNET"
    parsed = parse_dat_bytes(line.encode(), "B.DAT")

    assert parsed.stats.successful_matches == 0
    assert parsed.stats.alternative_matches == 1
    rec = parsed.records[0]
    assert rec.transaction_date == "2025-07-11"
    assert rec.amount == Decimal("25.00")
    assert rec.mobile_number == "081230881"
    assert rec.transaction_time == "09:00:00"
    assert rec.transaction_id == ""


def test_filters_bucket_marker_before_auth():
    lines = [
        "",
        "HEADER 2025-07-10",
        # Has the auth phrase but no marker: counted as no-marker
        "XYZ AUTH CANCELLED 20250710 00000000000000015040 0812308818 20250710143015INTERNET",
        "CPY 0009 BALANCE INQUIRY 20250710",
        dat_line(),
    ]
    parsed = parse_dat_bytes("\n".join(lines).encode(), "C.DAT")

    s = parsed.stats
    assert s.total_lines == 5
    assert s.skipped_no_marker == 3
    assert s.skipped_no_auth == 1
    assert s.processed_lines == 1
    assert len(parsed.records) == 1


def test_unmatched_segment_is_a_failure_not_an_exception():
    line = "CPY 0003 AUTH CANCELLED ABC 12345 20250710143015INTERNET"
    parsed = parse_dat_bytes(line.encode(), "D.DAT")

    assert parsed.records == []
    assert parsed.stats.processed_lines == 1
    assert parsed.stats.processing_errors == 1
    assert parsed.failures[0].reason is FailureReason.NO_SHAPE_MATCH
    assert parsed.failures[0].line_number == 1


def test_auth_phrase_is_case_insensitive():
    line = dat_line().replace("AUTH CANCELLED", "auth  cancelled")
    parsed = parse_dat_bytes(line.encode(), "E.DAT")
    assert len(parsed.records) == 1


def test_only_first_errors_are_logged(caplog: pytest.LogCaptureFixture):
    bad = "CPY 0003 AUTH CANCELLED ABC 12345 20250710143015INTERNET"
    caplog.set_level(logging.WARNING, logger="dat_ledger")

    parsed = parse_dat_bytes("\n".join([bad] * 8).encode(), "F.DAT")

    assert parsed.stats.processing_errors == 8
    logged = [r for r in caplog.records if "dat_parse_error" in r.getMessage()]
    assert len(logged) == 5


def test_summary_logged_once_per_file(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO, logger="dat_ledger")
    parse_dat_bytes(dat_line().encode(), "G.DAT")

    summaries = [r.getMessage() for r in caplog.records if r.getMessage().startswith("dat_parse_summary")]
    assert len(summaries) == 1
    assert "file=G.DAT" in summaries[0]
    assert "successful_matches=1" in summaries[0]


def test_empty_file_reports_zero_matches(tmp_path: Path):
    path = tmp_path / "EMPTY.DAT"
    path.write_bytes(b"")
    parsed = parse_dat_file(path)

    assert parsed.records == []
    assert parsed.stats.total_lines == 0
    assert parsed.stats.successful_matches == 0


def test_whitespace_only_file_counts_lines(tmp_path: Path):
    path = write_dat(tmp_path / "BLANK.DAT", ["   ", "", "\t"])
    parsed = parse_dat_file(path)

    assert parsed.stats.total_lines == 3
    assert parsed.stats.skipped_no_marker == 3
    assert parsed.stats.successful_matches == 0


def test_missing_file_raises_oserror(tmp_path: Path):
    with pytest.raises(OSError):
        parse_dat_file(tmp_path / "nope.DAT")


def test_file_source_is_restartable(tmp_path: Path):
    path = write_dat(tmp_path / "R.DAT", [dat_line(), dat_line(seq="0002", txn_id="QWERTY12")])
    source = DatFileSource(path)

    first = DatExtractor().parse(source, filename=source.filename)
    second = DatExtractor().parse(source, filename=source.filename)

    assert first.records == second.records
    assert len(first.records) == 2


def test_crlf_and_undecodable_bytes_are_tolerated():
    content = dat_line().encode() + b"\r\n" + b"CPY \xff\xfe garbage\r\n"
    parsed = parse_dat_bytes(content, "H.DAT")

    assert len(parsed.records) == 1
    assert parsed.stats.total_lines == 2
    assert parsed.stats.skipped_no_auth == 1


def test_extract_records_is_lazy_and_updates_stats():
    stats = FileParseStats(filename="L.DAT")
    results = extract_records(
        _raw([dat_line(), "CPY 1 AUTH CANCELLED X 20250710143015INTERNET"], "L.DAT"),
        filename="L.DAT",
        stats=stats,
    )
    first = next(results)
    assert isinstance(first, TransactionRecord)
    assert stats.total_lines == 1

    rest = list(results)
    assert len(rest) == 1 and isinstance(rest[0], ParseFailure)
    assert stats.total_lines == 2


def test_find_transaction_id_requires_letter_start():
    assert find_transaction_id("x 20250710NAM0SVFGY9QB y", "20250710") == "NAM0SVFGY9QB"
    assert find_transaction_id("x 2025071012345 y", "20250710") == ""
    assert find_transaction_id("x 20250710AB1 y", "20250710") == ""


def test_custom_marker_and_shapes():
    extractor = DatExtractor(shapes=(ALTERNATIVE_SHAPE,), marker="ZZZ")
    line = dat_line().replace("CPY", "ZZZ")
    parsed = extractor.parse(_raw([line]), filename="Z.DAT")

    assert parsed.stats.alternative_matches == 1
    assert parsed.stats.successful_matches == 0


def test_extractor_requires_shapes():
    with pytest.raises(ValueError):
        DatExtractor(shapes=())
