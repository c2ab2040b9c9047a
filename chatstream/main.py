"""
Command-line driver: stream replies from the configured endpoint to stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys

import structlog

from .config import Configuration
from .conversation import ConversationController
from .logging_utils import configure_logging
from .models import Message, MessageRole, MessageStatus
from .streaming.models import Diagnostic, StreamMode
from .transport import HttpxTransport

logger = structlog.get_logger(__name__)


class TerminalPrinter:
    """Print the assistant reply incrementally from message snapshots."""

    def __init__(self, out=None) -> None:
        self.out = out or sys.stdout
        self._message_id: str | None = None
        self._printed = 0

    def __call__(self, messages: tuple[Message, ...]) -> None:
        if not messages or messages[-1].role is not MessageRole.ASSISTANT:
            return
        message = messages[-1]
        if message.id != self._message_id:
            self._message_id = message.id
            self._printed = 0

        text = message.text
        if len(text) > self._printed:
            self.out.write(text[self._printed:])
            self._printed = len(text)
        if message.is_final:
            if message.status is MessageStatus.FAILED and message.failure_kind:
                self.out.write(f"\n[{message.failure_kind.value}]")
            self.out.write("\n")
        self.out.flush()


class StopOnInterrupt:
    """SIGINT handler that stops the active stream without blocking the loop."""

    def __init__(self, controller: ConversationController) -> None:
        self.controller = controller
        self.tasks: set[asyncio.Task] = set()

    def __call__(self) -> None:
        logger.info("Received interrupt, stopping the active stream")
        task = asyncio.get_running_loop().create_task(self.controller.stop())
        self.tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            logger.error(
                "Stopping the active stream failed",
                error_type=type(error).__name__,
                error_message=str(error),
            )


def _print_diagnostic(diagnostic: Diagnostic) -> None:
    logger.debug("Diagnostic", kind=diagnostic.kind.value, error=diagnostic.error)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatstream",
        description="Send a prompt and print the streamed reply.",
    )
    parser.add_argument("prompt", nargs="?", help="prompt to send; omit for a REPL")
    parser.add_argument("--config", help="path to a YAML configuration file")
    parser.add_argument("--endpoint", help="override stream.endpoint")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in StreamMode],
        help="override stream.mode",
    )
    return parser


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configuration = Configuration(args.config)
    configure_logging(configuration.get_logging_config())

    overrides = {}
    if args.endpoint:
        overrides["endpoint"] = args.endpoint
    if args.mode:
        overrides["mode"] = StreamMode(args.mode)

    async with HttpxTransport.from_config(
        configuration.get_transport_config()
    ) as transport:
        controller = ConversationController.from_config(
            configuration,
            transport,
            on_diagnostic=_print_diagnostic,
            **overrides,
        )
        controller.subscribe(TerminalPrinter())

        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, StopOnInterrupt(controller))

        if args.prompt:
            await controller.send(args.prompt)
            return 1 if controller.error else 0

        while True:
            try:
                prompt = await asyncio.to_thread(input, "> ")
            except EOFError:
                return 0
            if prompt.strip() in ("/quit", "/exit"):
                return 0
            if prompt.strip() == "/reset":
                await controller.reset()
                continue
            await controller.send(prompt)


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
