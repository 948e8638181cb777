from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional

from .analyzer import BaseAnalyzer, LLMAnalyzer, NoOpAnalyzer, PatternAnalyzer
from .config import CheckerConfig
from .controller import TriggerController
from .schemas import CheckState, Span
from .settings import Settings, get_settings

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def parse_scope(value: str) -> Span:
    try:
        start, end = (int(part) for part in value.split(":", 1))
    except ValueError:
        raise argparse.ArgumentTypeError("scope must look like START:END") from None
    if start < 0 or end < start:
        raise argparse.ArgumentTypeError("scope needs 0 <= START <= END")
    return Span(start=start, end=end)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Grammar and style checks for long documents")
    parser.add_argument("--config", help="Path to the checker YAML config")
    backend = parser.add_mutually_exclusive_group()
    backend.add_argument(
        "--offline",
        action="store_true",
        help="Use the built-in pattern rules instead of the LLM",
    )
    backend.add_argument(
        "--no-analysis",
        action="store_true",
        help="Run the checker without any analyzer (reports nothing)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    check = commands.add_parser("check", help="Check a file once")
    check.add_argument("file", help="Text file to check")
    check.add_argument("--scope", type=parse_scope, help="Only check characters START:END")
    check.add_argument("--output", help="Write findings to a JSON file instead of stdout")

    watch = commands.add_parser("watch", help="Re-check a file whenever it changes")
    watch.add_argument("file", help="Text file to watch")
    watch.add_argument("--scope", type=parse_scope, help="Only check characters START:END")
    watch.add_argument(
        "--interval",
        type=float,
        default=0.25,
        help="Seconds between checks for changes",
    )
    return parser.parse_args(argv)


def build_analyzer(args: argparse.Namespace, config: CheckerConfig, settings: Settings) -> BaseAnalyzer:
    if args.no_analysis or not config.analysis_enabled:
        return NoOpAnalyzer()
    if args.offline:
        return PatternAnalyzer()
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set; falling back to offline pattern rules")
        return PatternAnalyzer()
    return LLMAnalyzer(
        api_key=settings.openai_api_key,
        model=config.analysis_model,
        temperature=config.analysis_temperature,
        base_url=settings.openai_api_base,
        timeout=settings.openai_timeout,
    )


def render(state: CheckState, source: str) -> dict:
    return {
        "file": source,
        "findings": [finding.model_dump(mode="json") for finding in state.findings],
        "progress": state.progress.model_dump(),
    }


def log_progress(state: CheckState) -> None:
    progress = state.progress
    logger.info(
        "%s/%s chunks done, %s in flight, %s findings%s",
        progress.completed_chunks,
        progress.total_chunks,
        progress.in_flight_chunks,
        len(state.findings),
        " (checking)" if state.is_checking else "",
    )


async def run_check(
    path: Path,
    analyzer: BaseAnalyzer,
    config: CheckerConfig,
    scope: Optional[Span] = None,
) -> CheckState:
    controller = TriggerController(analyzer, config, on_change=log_progress)
    controller.update(path.read_text(encoding="utf-8"), scope)
    controller.flush()
    await controller.wait_idle()
    state = controller.snapshot()
    controller.close()
    return state


async def run_watch(
    path: Path,
    analyzer: BaseAnalyzer,
    config: CheckerConfig,
    *,
    interval: float,
    scope: Optional[Span] = None,
) -> None:
    controller = TriggerController(analyzer, config, on_change=log_progress)
    last_text: Optional[str] = None
    unreadable = False
    try:
        while True:
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as exc:
                if not unreadable:
                    logger.warning("Cannot read %s, will keep polling: %s", path, exc)
                unreadable = True
                await asyncio.sleep(interval)
                continue
            if unreadable:
                logger.info("%s is readable again", path)
                unreadable = False
            if text != last_text:
                last_text = text
                controller.update(text, scope)
            await asyncio.sleep(interval)
    finally:
        controller.close()


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config = CheckerConfig.from_file(args.config) if args.config else CheckerConfig()
    analyzer = build_analyzer(args, config, get_settings())
    path = Path(args.file).expanduser()

    if args.command == "watch":
        logger.info("Watching %s (Ctrl+C to stop)", path)
        try:
            asyncio.run(run_watch(path, analyzer, config, interval=args.interval, scope=args.scope))
        except KeyboardInterrupt:
            logger.info("Stopped watching %s", path)
        return

    state = asyncio.run(run_check(path, analyzer, config, args.scope))
    output = json.dumps(render(state, str(path)), ensure_ascii=False, indent=2)
    if args.output:
        output_path = Path(args.output).expanduser()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(output, encoding="utf-8")
        logger.info("Wrote %s findings to %s", len(state.findings), output_path)
    else:
        print(output)


if __name__ == "__main__":
    main()
