from __future__ import annotations

from employer_import.models.reconcile_result import PreviewSummary, ReconcileResult
from employer_import.services.summary import (
    RLS_HINT,
    SESSION_EXPIRED_MESSAGE,
    render_error_lines,
    render_preview_line,
    render_result_line,
)


def _result(**kw) -> ReconcileResult:
    base = dict(dry_run=False, total=3, processed=3, created=1, updated=1, reallocated=1, errors=0, skipped=1)
    base.update(kw)
    return ReconcileResult(**base)


def test_render_preview_line():
    line = render_preview_line(PreviewSummary(rows=3, to_create=0, to_update=1, conflict=1, invalid=1))
    assert line == "SUMMARY rows=3 to_create=0 to_update=1 conflict=1 invalid=1"


def test_render_result_line_commit():
    line = render_result_line(_result(elapsed_seconds=1.234))
    assert line == (
        "SUMMARY mode=commit processed=3/3 created=1 updated=1 reallocated=1 "
        "errors=0 skipped=1 elapsed_sec=1.23"
    )


def test_render_result_line_simulate_small_elapsed():
    line = render_result_line(_result(dry_run=True, elapsed_seconds=0.0012))
    assert line.startswith("SUMMARY mode=simulate ")
    assert line.endswith("elapsed_sec=0.0012")


def test_error_lines_empty_when_clean():
    assert render_error_lines(_result()) == []


def test_error_lines_are_capped_per_category():
    unique = [f"Linha {i}: X - duplicate key" for i in range(25)]
    lines = render_error_lines(_result(errors=25, unique_errors=unique), limit=20)
    assert lines[0] == "Conflitos de unicidade (25):"
    assert len([line for line in lines if line.startswith("  Linha")]) == 20
    assert lines[-1] == "  +5 mais"


def test_error_lines_rls_hint_and_session_expired():
    lines = render_error_lines(
        _result(errors=2, rls_errors=["Linha 2: A - permission denied"], other_errors=["Linha 3: B - x"], session_expired=True)
    )
    assert lines[0] == SESSION_EXPIRED_MESSAGE
    assert "Permissão negada (1):" in lines
    assert RLS_HINT in lines
    assert lines.index(RLS_HINT) < lines.index("Outros erros (1):")


def test_error_lines_duplicate_keys():
    lines = render_error_lines(_result(duplicate_keys=["000010", "000011"]))
    assert lines == ["Matrículas duplicadas após a importação: 000010, 000011"]
