from __future__ import annotations

"""Telegram notification transport, alert listener and command polling."""

import asyncio
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from telegram import Bot
from telegram.error import NetworkError, RetryAfter, TimedOut
from telegram.request import HTTPXRequest

from securevision.listeners import DetectionListener
from securevision.results import DetectionResult

logger = logging.getLogger(__name__)

SEND_ATTEMPTS = 3
UNKNOWN_FACE_ALERT_INTERVAL_SECONDS = 60.0


@dataclass
class TelegramCommand:
    """Normalized inbound Telegram text message."""

    text: str
    chat_id: str
    message_id: Optional[int] = None

    @property
    def command(self) -> str:
        """First word, lowercased, with any `@botname` suffix removed."""
        parts = self.text.split()
        if not parts:
            return ""
        return parts[0].split("@", 1)[0].lower()

    @property
    def args(self) -> list[str]:
        return self.text.split()[1:]


class TelegramNotifier:
    """Thread-safe Telegram text alerts and bot command listener.

    All Bot calls run on a private asyncio loop thread; callers block on the
    resulting future. Without a token and chat id the notifier is disabled
    and every call is a logged no-op.
    """

    def __init__(self, bot_token: str, chat_id: str) -> None:
        self.enabled = bool(bot_token and chat_id)
        self.chat_id = chat_id
        self.bot: Optional[Bot] = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: threading.Thread | None = None
        self._listener_thread: threading.Thread | None = None
        self._listener_stop = threading.Event()
        self._update_offset = 0
        self._send_lock = threading.Lock()

        if self.enabled:
            request = HTTPXRequest(
                connection_pool_size=8,
                pool_timeout=30.0,
                connect_timeout=10.0,
                read_timeout=30.0,
                write_timeout=30.0,
            )
            self.bot = Bot(token=bot_token, request=request)
            self._loop = asyncio.new_event_loop()
            self._loop_thread = threading.Thread(target=self._run_loop, name="telegram-loop", daemon=True)
            self._loop_thread.start()

    def _run_loop(self) -> None:
        if self._loop is None:
            return
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    async def _send_text_async(self, text: str) -> None:
        if self.bot is None:
            return
        await self.bot.send_message(
            chat_id=self.chat_id,
            text=text,
            pool_timeout=30.0,
            connect_timeout=10.0,
            read_timeout=30.0,
            write_timeout=30.0,
        )

    async def _get_updates_async(self, offset: int):
        if self.bot is None:
            return []
        return await self.bot.get_updates(offset=offset, timeout=25, allowed_updates=["message"])

    def send_text(self, text: str) -> bool:
        """Send one text message, retrying rate limits and network errors."""
        if not self.enabled or self._loop is None:
            logger.info("Telegram not configured; skipping message.")
            return False

        with self._send_lock:
            for attempt in range(1, SEND_ATTEMPTS + 1):
                try:
                    future = asyncio.run_coroutine_threadsafe(self._send_text_async(text=text), self._loop)
                    future.result(timeout=60)
                    return True
                except RetryAfter as exc:
                    delay = float(getattr(exc, "retry_after", 2))
                    logger.warning(
                        "Telegram rate-limited; retrying in %.1fs (attempt %d/%d)", delay, attempt, SEND_ATTEMPTS
                    )
                    time.sleep(delay)
                except (TimedOut, NetworkError) as exc:
                    delay = 1.5 * attempt
                    logger.warning(
                        "Telegram message failed (%s); retrying in %.1fs (attempt %d/%d)",
                        exc,
                        delay,
                        attempt,
                        SEND_ATTEMPTS,
                    )
                    time.sleep(delay)
                except Exception as exc:
                    logger.exception("Unexpected Telegram error: %s", exc)
                    return False

        logger.error("Telegram text send failed after %d attempts", SEND_ATTEMPTS)
        return False

    def start_command_listener(self, command_handler: Callable[[TelegramCommand], Optional[str]]) -> None:
        """Poll for commands from the configured chat and reply with the handler's text."""
        if not self.enabled or self._loop is None or self._listener_thread is not None:
            return

        def _poll() -> None:
            allowed_chat = str(self.chat_id).strip()
            while not self._listener_stop.is_set():
                try:
                    future = asyncio.run_coroutine_threadsafe(
                        self._get_updates_async(offset=self._update_offset),
                        self._loop,
                    )
                    updates = future.result(timeout=40)
                except Exception:
                    logger.exception("Telegram command poll failed")
                    self._listener_stop.wait(timeout=2.0)
                    continue

                for update in updates:
                    self._update_offset = int(update.update_id) + 1
                    message = getattr(update, "message", None)
                    if message is None:
                        continue
                    text = (getattr(message, "text", None) or "").strip()
                    incoming_chat = str(getattr(message, "chat_id", "")).strip()
                    if not text or incoming_chat != allowed_chat:
                        continue
                    command = TelegramCommand(
                        text=text,
                        chat_id=incoming_chat,
                        message_id=int(getattr(message, "message_id", 0) or 0) or None,
                    )
                    try:
                        reply = command_handler(command)
                    except Exception:
                        logger.exception("Telegram command %r failed", command.command)
                        reply = "Command failed; see logs."
                    if reply:
                        self.send_text(reply)

        self._listener_thread = threading.Thread(target=_poll, name="telegram-command-listener", daemon=True)
        self._listener_thread.start()

    def close(self) -> None:
        """Stop listener/event loop threads."""
        self._listener_stop.set()
        if self._listener_thread is not None:
            self._listener_thread.join(timeout=2)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=2)


class TelegramAlertListener(DetectionListener):
    """Forward recording lifecycle and unknown-face events to Telegram.

    Messages are queued and delivered by a worker thread so a slow or
    failing Telegram API never stalls the detection loop.
    """

    def __init__(
        self,
        notifier: TelegramNotifier,
        unknown_face_interval_seconds: float = UNKNOWN_FACE_ALERT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.notifier = notifier
        self.unknown_face_interval_seconds = unknown_face_interval_seconds
        self._clock = clock
        self._last_unknown_alert: Optional[float] = None
        self._outbox: "queue.Queue[str]" = queue.Queue(maxsize=50)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.sent = 0
        self.failed = 0

    def _enqueue(self, text: str) -> None:
        try:
            self._outbox.put_nowait(text)
        except queue.Full:
            logger.warning("Telegram outbox full; dropping alert: %s", text)

    def on_detection_result(self, result: DetectionResult) -> None:
        # Faces are only unknown once matching has actually run.
        if not result.recognition_ran or result.unknown_count == 0:
            return
        now = self._clock()
        if self._last_unknown_alert is not None and now - self._last_unknown_alert < self.unknown_face_interval_seconds:
            return
        self._last_unknown_alert = now
        self._enqueue(f"Unknown face on {result.camera_name or 'camera'} ({result.unknown_count} unrecognized)")

    def on_recording_started(self, filename: str) -> None:
        self._enqueue(f"Recording started: {filename}")

    def on_recording_stopped(self, filename: str, duration_ms: int) -> None:
        self._enqueue(f"Recording stopped: {filename} ({duration_ms / 1000.0:.1f}s)")

    def on_subsystem_error(self, message: str) -> None:
        self._enqueue(f"Detection error: {message}")

    def pending(self) -> int:
        return self._outbox.qsize()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                text = self._outbox.get(timeout=0.5)
            except queue.Empty:
                continue
            if self.notifier.send_text(text):
                self.sent += 1
            else:
                self.failed += 1

    def start(self) -> None:
        if not self.notifier.enabled or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="telegram-alerts", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None
