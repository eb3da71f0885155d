from __future__ import annotations

from ..models.reconcile_result import PreviewSummary, ReconcileResult

"""SUMMARY line and error list rendering.

Preview:
    SUMMARY rows={n} to_create={a} to_update={b} conflict={c} invalid={d}
Reconcile:
    SUMMARY mode={simulate|commit} processed={p}/{t} created={a} updated={b}
    reallocated={r} errors={e} skipped={s} elapsed_sec={x}

Error lists are capped for display; the stored lists stay complete.
"""

__all__ = [
    "DEFAULT_DISPLAY_LIMIT",
    "RLS_HINT",
    "SESSION_EXPIRED_MESSAGE",
    "render_preview_line",
    "render_result_line",
    "render_error_lines",
]

DEFAULT_DISPLAY_LIMIT = 20

RLS_HINT = "Permissão negada pelo banco: verifique se o usuário tem perfil de administrador da clínica"
SESSION_EXPIRED_MESSAGE = "Sessão expirada: importação interrompida; registros já gravados foram mantidos"


def _format_seconds(value: float) -> str:
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        # Format very small numbers to avoid scientific notation
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.2f}"


def render_preview_line(summary: PreviewSummary) -> str:
    return (
        f"SUMMARY rows={summary.rows} "
        f"to_create={summary.to_create} "
        f"to_update={summary.to_update} "
        f"conflict={summary.conflict} "
        f"invalid={summary.invalid}"
    )


def render_result_line(result: ReconcileResult) -> str:
    """Render the SUMMARY line of one reconcile run.

    Examples:
        >>> r = ReconcileResult(dry_run=True, total=2, processed=2, created=1,
        ...     updated=1, reallocated=0, errors=0, skipped=1)
        >>> render_result_line(r)
        'SUMMARY mode=simulate processed=2/2 created=1 updated=1 reallocated=0 errors=0 skipped=1 elapsed_sec=0'
    """
    mode = "simulate" if result.dry_run else "commit"
    return (
        f"SUMMARY mode={mode} "
        f"processed={result.processed}/{result.total} "
        f"created={result.created} "
        f"updated={result.updated} "
        f"reallocated={result.reallocated} "
        f"errors={result.errors} "
        f"skipped={result.skipped} "
        f"elapsed_sec={_format_seconds(result.elapsed_seconds)}"
    )


def _capped(title: str, lines: list[str], limit: int) -> list[str]:
    if not lines:
        return []
    out = [f"{title} ({len(lines)}):"]
    out.extend(f"  {line}" for line in lines[:limit])
    if len(lines) > limit:
        out.append(f"  +{len(lines) - limit} mais")
    return out


def render_error_lines(result: ReconcileResult, limit: int = DEFAULT_DISPLAY_LIMIT) -> list[str]:
    """Operator-facing error block, each category capped at `limit` entries."""
    lines: list[str] = []
    if result.session_expired:
        lines.append(SESSION_EXPIRED_MESSAGE)
    lines += _capped("Conflitos de unicidade", result.unique_errors, limit)
    lines += _capped("Permissão negada", result.rls_errors, limit)
    if result.rls_errors:
        lines.append(RLS_HINT)
    lines += _capped("Outros erros", result.other_errors, limit)
    if result.duplicate_keys:
        lines.append(f"Matrículas duplicadas após a importação: {', '.join(result.duplicate_keys)}")
    return lines
