"""Run ``parse_document`` in a separate, killable OS process.

Pathological markup must never hang or crash the per-article pipeline, so
the parse runs in a spawned worker that reports back over a pipe. The caller
waits on the pipe off the event loop and kills the worker on timeout.
"""

from __future__ import annotations

import asyncio
import multiprocessing
from multiprocessing.connection import Connection

import structlog

from shoespecs.core.errors import DocumentParseError, DocumentParseTimeout
from shoespecs.services.dom_parser import DocumentParseResult, parse_document

logger = structlog.get_logger(__name__)

_JOIN_GRACE_SECONDS = 1.0


def _parse_in_worker(conn: Connection, html: str, debug: bool) -> None:
    """Worker entry point; the outcome always goes back over ``conn``."""
    try:
        result = parse_document(html, debug=debug)
    except Exception as exc:
        conn.send(("error", type(exc).__name__, str(exc)[:500]))
    else:
        conn.send(("ok", result))
    finally:
        conn.close()


def _spawn(html: str, debug: bool) -> tuple[multiprocessing.process.BaseProcess, Connection]:
    ctx = multiprocessing.get_context("spawn")
    parent_conn, child_conn = ctx.Pipe(duplex=False)
    process = ctx.Process(
        target=_parse_in_worker,
        args=(child_conn, html, debug),
        name="dom-parse-worker",
        daemon=True,
    )
    process.start()
    # Only the worker writes; drop our copy so EOF is seen if it dies.
    child_conn.close()
    return process, parent_conn


def _stop(process: multiprocessing.process.BaseProcess) -> None:
    if process.is_alive():
        process.kill()
    process.join(_JOIN_GRACE_SECONDS)


async def parse_document_isolated(
    html: str,
    *,
    timeout: float,
    debug: bool = False,
) -> DocumentParseResult:
    """Parse ``html`` in an isolated worker with a hard deadline.

    Raises:
        DocumentParseTimeout: the worker did not answer within ``timeout``
            seconds and was killed.
        DocumentParseError: the worker crashed or reported an exception.
    """
    process, conn = _spawn(html, debug)
    try:
        ready = await asyncio.to_thread(conn.poll, timeout)
        if not ready:
            logger.warning("dom_worker.timeout", timeout_seconds=timeout, html_length=len(html))
            raise DocumentParseTimeout(f"DOM parse timeout after {timeout}s")
        try:
            message = await asyncio.to_thread(conn.recv)
        except EOFError as exc:
            raise DocumentParseError(
                f"DOM parse worker exited without a result (exit code {process.exitcode})"
            ) from exc
    finally:
        conn.close()
        await asyncio.to_thread(_stop, process)

    if message[0] == "error":
        _, error_name, error_message = message
        raise DocumentParseError(f"{error_name}: {error_message}")

    result: DocumentParseResult = message[1]
    for diagnostic in result.table_diagnostics:
        logger.info("dom_worker.table_diagnostic", **diagnostic)
    if debug:
        logger.info(
            "dom_worker.summary",
            tables_total=result.tables_total,
            candidates_found=result.candidates_found,
            detected_mode="multi_table" if result.multi_table else "single",
        )
    return result
