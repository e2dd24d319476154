"""btca - main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _configure_logging(level: str, log_file: Path | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(_LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)


class _AnswerPrinter:
    """Writes the growing answer to stdout as frames arrive."""

    def __init__(self, out=None) -> None:
        from btca.adapters.chunks import ChunkAccumulator

        self._out = out or sys.stdout
        self._printed = ""
        self.accumulator = ChunkAccumulator()

    def frame(self, frame: dict) -> None:
        self.accumulator.apply_frame(frame)
        self._sync(self.accumulator.answer)

    def update(self, update) -> None:
        self.accumulator.apply(update)
        self._sync(self.accumulator.answer)

    def _sync(self, answer: str) -> None:
        if answer == self._printed:
            return
        if answer.startswith(self._printed):
            self._out.write(answer[len(self._printed):])
        else:
            # Earlier text was rewritten; print the new version whole.
            self._out.write("\n" + answer)
        self._out.flush()
        self._printed = answer

    def finish(self) -> None:
        if self._printed and not self._printed.endswith("\n"):
            self._out.write("\n")
            self._out.flush()


def _install_sigint(callback) -> None:
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, callback)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not supported on this platform")


async def _ask_local(engine, args) -> int:
    printer = _AnswerPrinter()
    run = await engine.start_question(
        args.question, args.resource or None, thread_id=args.thread,
    )
    _install_sigint(run.cancel)
    from btca.engine.errors import AgentError

    try:
        async for update in run:
            printer.update(update)
    except AgentError as exc:
        printer.finish()
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    printer.finish()
    if run.status == "canceled":
        print("(canceled)", file=sys.stderr)
        return 130
    if run.thread_id:
        print(f"thread: {run.thread_id}", file=sys.stderr)
    return 0


async def _ask_remote(base_url: str, args) -> int:
    from btca.client import BtcaClient

    printer = _AnswerPrinter()
    task = asyncio.current_task()
    _install_sigint(task.cancel)
    async with BtcaClient(base_url) as client:
        try:
            async for frame in client.ask_stream(
                args.question, args.resource or None, thread_id=args.thread,
            ):
                printer.frame(frame)
        except asyncio.CancelledError:
            printer.finish()
            print("(canceled)", file=sys.stderr)
            return 130
    printer.finish()
    acc = printer.accumulator
    if acc.error is not None:
        print(f"Error: {acc.error.get('message')}", file=sys.stderr)
        return 1
    thread_id = (acc.meta or {}).get("threadId")
    if thread_id:
        print(f"thread: {thread_id}", file=sys.stderr)
    return 0


def _print_resources(config) -> None:
    if not config.resources:
        print("No resources configured.")
        return
    for name in config.resource_names():
        resource = config.resources[name]
        location = resource.url if resource.kind == "git" else resource.path
        print(f"  {name:<20} {resource.kind:<6} {location}")


def _print_threads(store) -> None:
    threads = store.list_threads()
    if not threads:
        print("No threads.")
        return
    for t in threads:
        prompt = (t.first_prompt or "").replace("\n", " ")
        print(f"  {t.id}  {t.question_count:>3}q  [{', '.join(t.resources)}]  {prompt[:60]}")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="btca",
        description="btca - ask questions about libraries from their source",
    )
    parser.add_argument(
        "-q", "--question", metavar="TEXT",
        help="Ask a question and print the streamed answer",
    )
    parser.add_argument(
        "-r", "--resource", metavar="NAME", action="append",
        help="Resource to search (repeatable; @name in the question also works; default: all configured)",
    )
    parser.add_argument(
        "--thread", metavar="ID",
        help="Continue an existing conversation thread",
    )
    parser.add_argument(
        "--remote", metavar="URL",
        help="Ask a running btca server instead of answering locally",
    )
    parser.add_argument(
        "--list-resources", action="store_true",
        help="List configured resources and exit",
    )
    parser.add_argument(
        "--list-threads", action="store_true",
        help="List saved conversation threads and exit",
    )
    parser.add_argument(
        "--clear", action="store_true",
        help="Delete cached resources and collections and exit",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start HTTP+SSE server mode",
    )
    parser.add_argument(
        "--host", default=None,
        help="Server host (default from config)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="Global YAML config file (default: ~/.config/btca/btca.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log debug output to stderr",
    )
    args = parser.parse_args()

    if args.remote and args.question:
        _configure_logging("DEBUG" if args.verbose else "WARNING")
        sys.exit(asyncio.run(_ask_remote(args.remote, args)))

    from btca.engine.errors import BtcaError
    from btca.engine.yaml_config import load_config

    cli_level = "DEBUG" if args.verbose else "WARNING"
    _configure_logging(cli_level)
    try:
        config = load_config(global_path=args.config)
    except BtcaError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)

    if args.list_resources:
        _print_resources(config)
        sys.exit(0)

    from btca.engine.engine import BtcaEngine
    from btca.shared.services.thread_store import ThreadStore

    store = ThreadStore(config.threads_db_path)

    if args.list_threads:
        _print_threads(store)
        sys.exit(0)

    engine = BtcaEngine(config, thread_store=store)

    if args.clear:
        engine.clear()
        print(f"Cleared resources and collections under {config.data_directory}")
        sys.exit(0)

    if args.server:
        from btca.server.server import BtcaServer

        log_level = os.getenv("BTCA_LOG_LEVEL", config.log_level).upper()
        if args.verbose:
            log_level = "DEBUG"
        log_file = Path(config.data_directory) / "logs" / "btca-server.log"
        _configure_logging(log_level, log_file)
        logger.info(
            "Starting btca server mode cwd=%s config=%s data=%s log=%s",
            Path.cwd(), config.config_path, config.data_directory, log_file,
        )
        if not engine.backend.is_available():
            logger.warning(
                "Agent command %r not found on PATH; questions will fail",
                config.agent_command,
            )
        server = BtcaServer(
            engine,
            host=args.host or config.host,
            port=config.port if args.port is None else args.port,
        )
        asyncio.run(server.start())
        sys.exit(0)

    if args.question:
        try:
            code = asyncio.run(_ask_local(engine, args))
        except BtcaError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            code = 2
        sys.exit(code)

    parser.print_help()


if __name__ == "__main__":
    main()
