from __future__ import annotations

import asyncio
import atexit
import shlex
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable

# Enable readline for arrow keys, history navigation, and line editing.
try:
    import readline
except ImportError:
    readline = None  # type: ignore[assignment]  # Windows fallback

from apps.cli.output import format_progress, one_line
from localllm.engine.chat import ChatConfig, ChatOrchestrator
from localllm.engine.host import ModelHost
from localllm.engine.session import LLMConfig
from localllm.types import GenerateOptions, LoadProgress

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant running locally. Answer clearly and concisely."

# Commands for tab completion
_CHAT_COMMANDS = ["/help", "/exit", "/clear", "/reload", "/history"]

ReadLine = Callable[[str], Awaitable["str | None"]]


def _chat_history_file_path() -> Path:
    return Path.home() / ".config" / "localllm" / "chat_history"


def _setup_readline_history() -> None:
    """Set up persistent command history for the REPL."""
    if readline is None:
        return
    history_file = _chat_history_file_path()
    history_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        readline.read_history_file(history_file)
    except FileNotFoundError:
        pass
    readline.set_history_length(1000)
    atexit.register(readline.write_history_file, history_file)


def _setup_completer() -> None:
    """Set up tab completion for REPL commands."""
    if readline is None:
        return

    def completer(text: str, state: int) -> str | None:
        if text.startswith("/"):
            matches = [cmd for cmd in _CHAT_COMMANDS if cmd.startswith(text)]
        else:
            matches = []
        return matches[state] if state < len(matches) else None

    readline.set_completer(completer)
    readline.set_completer_delims(" \t\n")
    readline.parse_and_bind("tab: complete")


_HELP = "\n".join(
    [
        "commands:",
        "  /help",
        "  /exit           exit",
        "  /clear          reset the conversation",
        "  /reload         regenerate the last reply",
        "  /history [n]    show the last n messages (default 20)",
        "ctrl-c while the assistant is answering stops the reply.",
    ]
)


async def _stdin_line(prompt: str) -> str | None:
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, input, prompt)
    except EOFError:
        return None


class ChatRepl:
    """Terminal front end for a `ChatOrchestrator`.

    Input is read while the model is still loading; a message sent before
    the model is ready is queued by the orchestrator and answered as soon
    as loading finishes.
    """

    def __init__(
        self,
        host: ModelHost,
        config: ChatConfig,
        *,
        read_line: ReadLine = _stdin_line,
        out=None,
    ) -> None:
        self._host = host
        self._out = out or sys.stdout
        self._read_line = read_line
        self._stopped = asyncio.Event()
        self._background: asyncio.Future | None = None
        self.chat = ChatOrchestrator(
            host,
            config,
            on_start=self._on_start,
            on_token=self._on_token,
            on_finish=self._on_finish,
            on_error=self._on_error,
        )

    # -- output ---------------------------------------------------------------

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()

    def _on_start(self) -> None:
        self._write("assistant: ")

    def _on_token(self, token: str, full_text: str) -> None:
        self._write(token)

    def _on_finish(self, text: str) -> None:
        self._write("\n")

    def _on_error(self, exc: BaseException) -> None:
        self._write(f"\n[chat] error: {exc}\n")

    # -- turns ----------------------------------------------------------------

    def _request_stop(self) -> None:
        if self.chat.is_generating:
            self.chat.stop()
            self._write(" [stopped]\n")
            self._stopped.set()

    async def _finish_background(self) -> None:
        # A stopped generation keeps running until the engine returns.
        if self._background is not None and not self._background.done():
            self._write("[chat] waiting for the previous reply to wind down...\n")
            await self._background
        self._background = None

    async def run_turn(self, coro: Awaitable[str]) -> None:
        await self._finish_background()
        loop = asyncio.get_running_loop()
        self._stopped.clear()

        task = asyncio.ensure_future(coro)
        sigint_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self._request_stop)
            sigint_installed = True
        except (NotImplementedError, RuntimeError, ValueError):
            pass

        try:
            stop_wait = asyncio.ensure_future(self._stopped.wait())
            done, _ = await asyncio.wait({task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
            stop_wait.cancel()
            if task not in done:
                self._background = task
                return

            if self.chat.is_pending:
                self._write("[chat] model is still loading; your message is queued.\n")
                await self._host.wait()
                if self._host.error is not None:
                    self._write(f"[chat] model failed to load: {self._host.error}\n")
                    return
                await self.chat.join()
        finally:
            if sigint_installed:
                loop.remove_signal_handler(signal.SIGINT)

    # -- commands -------------------------------------------------------------

    def _cmd_history(self, n: int = 20) -> None:
        messages = self.chat.messages
        if not messages:
            self._write("(empty)\n")
            return
        start = max(0, len(messages) - n)
        for i in range(start, len(messages)):
            self._write(f"{i:>4} {one_line(messages[i])}\n")

    async def _handle_command(self, line: str) -> bool:
        """Run a slash command. Returns False when the REPL should exit."""
        try:
            parts = shlex.split(line[1:].strip())
        except ValueError as exc:
            self._write(f"error: {exc}\n")
            return True
        if not parts:
            return True
        cmd, args = parts[0], parts[1:]

        if cmd in {"exit", "quit"}:
            return False
        if cmd == "help":
            self._write(_HELP + "\n")
        elif cmd == "clear":
            self.chat.clear()
            self._write("cleared conversation\n")
        elif cmd == "reload":
            await self.run_turn(self.chat.reload())
        elif cmd == "history":
            try:
                n = int(args[0]) if args else 20
            except ValueError:
                self._write("usage: /history [n]\n")
                return True
            self._cmd_history(n)
        else:
            self._write(f"unknown command: /{cmd} (try /help)\n")
        return True

    async def loop(self) -> int:
        while True:
            raw = await self._read_line("you> ")
            if raw is None:
                self._write("\n")
                break
            line = raw.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await self._handle_command(line):
                    break
                continue
            await self.run_turn(self.chat.send(line))

        await self._finish_background()
        self.chat.close()
        return 0


def chat_repl(
    *,
    config: LLMConfig,
    system_prompt: str | None = DEFAULT_SYSTEM_PROMPT,
    generate_options: GenerateOptions | None = None,
) -> int:
    _setup_readline_history()
    _setup_completer()

    last_step: list[int] = [-1]

    def on_progress(p: LoadProgress) -> None:
        step = p.progress // 25
        if step != last_step[0]:
            last_step[0] = step
            print(f"\n[chat] {format_progress(p)}", flush=True)

    async def _main() -> int:
        host = ModelHost(config, on_progress=on_progress)
        repl = ChatRepl(
            host,
            ChatConfig(system_prompt=system_prompt, generate_options=generate_options),
        )
        async with host:
            print("[chat] loading model in the background; you can start typing.", flush=True)
            print("type /help for commands", flush=True)
            return await repl.loop()

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        print("^C")
        return 130
