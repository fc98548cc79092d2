#!/usr/bin/env python3
"""
Guidance MCP Server

FastMCP server exposing the guidance pipeline to agents via Model Context
Protocol. The server is a thin wrapper: every decision is made by
GuidancePipeline, the tools only translate arguments and results.

Features:
- evaluate_request: full pipeline run for one request
- record_outcome: feed the learning store
- reload_catalog: manual catalog reload (rate limited)
- learning_stats: learning store diagnostics
- Automatic catalog reload via file watcher
"""

import logging
import signal
import sys
import threading
import time
from datetime import datetime

from mcp.server.fastmcp import FastMCP

from guidance_engine.catalog import load_catalog
from guidance_engine.config import get_catalog_path, load_config
from guidance_engine.formatter import format_hook_context, format_markdown
from guidance_engine.pipeline import GuidancePipeline, build_pipeline
from guidance_engine.watcher import CatalogWatcher

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("guidance-orchestrator")

# Pipeline state (built on first use)
_pipeline: GuidancePipeline | None = None
_pipeline_lock = threading.Lock()
_watcher: CatalogWatcher | None = None

_last_manual_reload = 0.0
MIN_MANUAL_RELOAD_INTERVAL = 10.0  # Minimum 10 seconds between manual reloads


def get_pipeline() -> GuidancePipeline:
    """Return the server pipeline, building it from configuration on first use."""
    global _pipeline
    with _pipeline_lock:
        if _pipeline is None:
            _pipeline = build_pipeline(load_config())
        return _pipeline


def set_pipeline(pipeline: GuidancePipeline | None) -> None:
    """Replace the server pipeline (embedding and tests)."""
    global _pipeline
    with _pipeline_lock:
        _pipeline = pipeline


def _reload_catalog() -> dict:
    pipeline = get_pipeline()
    catalog_path = get_catalog_path(pipeline.settings.raw)
    if catalog_path is None:
        return {
            "success": False,
            "error": "No catalog path configured",
            "timestamp": datetime.now().isoformat(),
        }

    try:
        start_time = time.time()
        catalog = load_catalog(catalog_path)
        result = pipeline.reload(catalog)
        result["success"] = True
        result["elapsed_ms"] = (time.time() - start_time) * 1000
        return result
    except Exception as e:
        logger.error(f"Catalog reload failed: {e}", exc_info=True)
        return {
            "success": False,
            "error": str(e),
            "timestamp": datetime.now().isoformat(),
        }


@mcp.tool()
async def evaluate_request(
    text: str = "",
    files: list[dict | str] | None = None,
    work_item: dict | None = None,
    output_format: str = "json",
) -> dict:
    """
    Run a development request through the guidance pipeline.

    Args:
        text: Free-text description of the request
        files: Touched files, each a path or {"path", "change_kind", "lines_changed"}
        work_item: Linked work item {"id", "kind", "title", "labels"}
        output_format: "json" (default), "hook" (adds XML-tagged context) or
                       "markdown" (adds a markdown report)

    Returns:
        Execution context dictionary with:
        - proceed / reason / state: gate decision
        - instructions: selected instruction ids
        - risk_level / risk_score / risk_factors / mitigation
        - truncated / degraded / fallback flags
        - context: detected context with learning suggestions

    Examples:
        evaluate_request("fix sql injection in login handler",
                         files=[{"path": "auth/login.py", "change_kind": "modified"}])
    """
    try:
        logger.info(
            f"evaluate_request called: text={text!r}, files={len(files or [])}, "
            f"work_item={'yes' if work_item else 'no'}"
        )
        pipeline = get_pipeline()
        result = pipeline.process(
            {"text": text, "files": files or [], "work_item": work_item}
        )
        response = result.to_dict()
        if output_format == "hook":
            response["formatted"] = format_hook_context(result, pipeline.catalog)
        elif output_format == "markdown":
            response["formatted"] = format_markdown(result)
        return response

    except Exception as e:
        logger.error(f"Error in evaluate_request: {e}", exc_info=True)
        return {"proceed": None, "error": str(e)}


@mcp.tool()
async def record_outcome(domain: str, persona: str, success: bool) -> dict:
    """
    Record whether a completed request went well.

    Args:
        domain: Primary domain of the request (from evaluate_request context)
        persona: Persona that handled it
        success: True if the outcome was successful

    Returns:
        Dictionary with recorded flag and the outcome echoed back
    """
    try:
        logger.info(
            f"record_outcome called: domain={domain}, persona={persona}, success={success}"
        )
        recorded = get_pipeline().record_outcome(domain, persona, success)
        return {
            "recorded": recorded,
            "domain": domain,
            "persona": persona,
            "success": success,
        }

    except Exception as e:
        logger.error(f"Error in record_outcome: {e}", exc_info=True)
        return {"recorded": False, "error": str(e)}


@mcp.tool()
async def reload_catalog(force: bool = False) -> dict:
    """
    Manually reload the instruction catalog.

    Includes spam prevention (10-second minimum interval).

    Args:
        force: If True, bypass spam prevention interval check

    Returns:
        Dictionary with success, old_count, new_count, excluded_count,
        elapsed_ms, or skipped=True when rate limited
    """
    global _last_manual_reload

    logger.info(f"Manual catalog reload requested (force={force})")

    if not force:
        time_since_last = time.time() - _last_manual_reload
        if time_since_last < MIN_MANUAL_RELOAD_INTERVAL:
            wait_time = MIN_MANUAL_RELOAD_INTERVAL - time_since_last
            logger.warning(
                f"Manual reload skipped (spam prevention): wait {wait_time:.1f}s"
            )
            return {
                "success": False,
                "skipped": True,
                "reason": "spam_prevention",
                "wait_seconds": round(wait_time, 1),
                "hint": f"Wait {wait_time:.1f}s or use force=true to bypass",
            }

    result = _reload_catalog()
    if result.get("success"):
        _last_manual_reload = time.time()
    return result


@mcp.tool()
async def learning_stats() -> dict:
    """
    Learning store diagnostics.

    Returns:
        Dictionary with store type, record and outcome counts, and every
        (domain, persona) record with its success ratio
    """
    try:
        pipeline = get_pipeline()
        if pipeline.learning is None:
            return {"error": "No learning engine configured"}
        return pipeline.learning.stats()

    except Exception as e:
        logger.error(f"Error in learning_stats: {e}", exc_info=True)
        return {"error": str(e)}


def _signal_handler(sig, frame):
    """Graceful shutdown handler for SIGTERM/SIGINT signals."""
    logger.info(
        f"Received signal {sig} ({signal.Signals(sig).name}), initiating graceful shutdown..."
    )
    if _watcher is not None:
        _watcher.stop()
    logger.info("Shutdown complete")
    sys.exit(0)


def main():
    """Main entry point for the guidance-server command.

    Starts the MCP server with:
    - Catalog loading from configuration
    - File watcher for automatic catalog reload
    - Signal handlers for graceful shutdown
    """
    global _watcher

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, str(config["logging"]["log_level"]).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    logger.info("=== Starting Guidance MCP Server ===")

    pipeline = build_pipeline(config)
    set_pipeline(pipeline)
    logger.info(f"Loaded {len(pipeline.catalog)} catalog entries")
    if len(pipeline.catalog) == 0:
        logger.warning("Catalog is empty: only decisions, no instructions, will be returned")

    catalog_path = get_catalog_path(config)
    if catalog_path is not None and catalog_path.exists():
        _watcher = CatalogWatcher(pipeline.catalog_holder, catalog_path)
        _watcher.start()

    logger.info("MCP server ready - listening for tool calls")
    mcp.run()


if __name__ == "__main__":
    main()
