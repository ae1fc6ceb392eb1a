"""
MODULE OVERVIEW:
The Rich terminal view of a chat session.

WHAT IS HAPPENING HERE:
The console subscribes to the session's event bus and redraws a Layout on a
fixed refresh tick: connection status in the header, the live message feed on
the left, typing, presence and delivery on the right. It never talks to the
transport itself.
"""
import asyncio
from collections import deque
from datetime import datetime

from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from reride.chat.session import RealtimeChatSession
from reride.shared.models import ChatMessage, MessageDeliveryStatus, PresenceStatus, TypingStatus


class ChatConsole:
    def __init__(self, session: RealtimeChatSession, conversation_id: str | None = None):
        self.session = session
        self.conversation_id = conversation_id
        self.recent_messages = deque(maxlen=15)
        self.timeline = deque(maxlen=6)
        self.typing: dict[str, bool] = {}
        self.presence: dict[str, str] = {}
        self.deliveries: dict[str, str] = {}
        self.online = False
        self._unsubscribers = []

    def _stamp(self) -> str:
        return datetime.now().strftime("%H:%M:%S")

    def on_connection(self, online: bool) -> None:
        self.online = online
        self.timeline.appendleft(f"[{self._stamp()}] {'online' if online else 'offline'} ({self.session.state.value})")

    def on_message(self, conversation_id: str, message: ChatMessage, _conversation=None) -> None:
        if self.conversation_id and conversation_id != self.conversation_id:
            return
        text = message.text if len(message.text) <= 60 else message.text[:60] + "..."
        self.recent_messages.appendleft((self._stamp(), message.sender, text, message.status or "-"))

    def on_typing(self, status: TypingStatus) -> None:
        self.typing[status.user_role] = status.is_typing

    def on_presence(self, status: PresenceStatus) -> None:
        state = "online" if status.is_online else f"last seen {status.last_seen or '?'}"
        self.presence[f"{status.user_email} ({status.user_role})"] = state

    def on_delivery(self, status: MessageDeliveryStatus) -> None:
        self.deliveries[str(status.message_id)] = status.status
        if len(self.deliveries) > 10:
            del self.deliveries[next(iter(self.deliveries))]

    def attach(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.session.on_connection(self.on_connection),
            self.session.on_message(self.on_message),
            self.session.on_typing(self.on_typing),
            self.session.on_presence(self.on_presence),
            self.session.on_delivery(self.on_delivery),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def generate_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(Layout(name="header", size=3), Layout(name="main"))
        layout["main"].split_row(Layout(name="left", ratio=2), Layout(name="right", ratio=1))
        layout["right"].split_column(Layout(name="presence"), Layout(name="activity"), Layout(name="timeline"))

        color = "green" if self.online and self.session.is_connected() else "yellow" if self.online else "red"
        mode = "live" if self.session.is_connected() else "degraded" if self.online else "offline"
        title = self.conversation_id or "all conversations"
        layout["header"].update(
            Panel(f"[{color} bold]{self.session.identity or '?'} | {title} | {mode}[/]", style=color)
        )

        table = Table(title="Messages", expand=True)
        table.add_column("Time", style="cyan", no_wrap=True)
        table.add_column("From", style="magenta")
        table.add_column("Text", style="green")
        table.add_column("Status", style="blue")
        for row in self.recent_messages:
            table.add_row(*row)
        layout["left"].update(Panel(table, title="Feed"))

        presence_text = "\n".join(f"{who}: {state}" for who, state in self.presence.items()) or "-"
        layout["presence"].update(Panel(presence_text, title="Presence"))

        typing = ", ".join(role for role, active in self.typing.items() if active) or "nobody"
        pending = sum(len(self.session.get_pending_messages(c)) for c in self.session.joined_conversations())
        activity = (
            f"Typing: {typing}\n"
            f"Pending: {pending}\n"
            + "\n".join(f"#{mid}: {state}" for mid, state in self.deliveries.items())
        )
        layout["activity"].update(Panel(activity, title="Activity"))

        layout["timeline"].update(Panel("\n".join(self.timeline), title="Timeline"))
        return layout

    async def run(self, duration_s: float | None = None) -> None:
        self.attach()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration_s if duration_s else None
        try:
            with Live(self.generate_layout(), refresh_per_second=4) as live:
                while deadline is None or loop.time() < deadline:
                    live.update(self.generate_layout())
                    await asyncio.sleep(0.25)
        finally:
            self.detach()
