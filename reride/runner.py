"""
CLI entrypoint for the ReRide realtime core.
"""
import asyncio
import time

import httpx
import typer
from loguru import logger

from reride.bootstrap import Services
from reride.chat.console import ChatConsole
from reride.shared.config import settings
from reride.shared.keys import conversation_id as make_conversation_id
from reride.shared.logging import setup_logging
from reride.shared.models import ChatMessage, Conversation

app = typer.Typer(help="ReRide realtime chat and request queue CLI")

ROLE_HELP = "customer or seller"


def _check_role(role: str) -> str:
    if role not in ("customer", "seller"):
        typer.echo(f"Invalid role: {role} ({ROLE_HELP})")
        raise typer.Exit(1)
    return role


@app.callback()
def main(log_level: str = typer.Option(None, help="Override LOG_LEVEL")):
    setup_logging(log_level or settings.LOG_LEVEL)


@app.command()
def server():
    """Start the development chat relay using Uvicorn."""
    import uvicorn

    typer.echo(f"Starting relay on port {settings.PORT}...")
    uvicorn.run("reride.server.main:app", host="0.0.0.0", port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


@app.command("open-conversation")
def open_conversation(
    customer: str = typer.Option(..., help="Customer id (usually the email)"),
    vehicle_id: int = typer.Option(..., help="Vehicle id"),
    seller: str = typer.Option(..., help="Seller id"),
    customer_name: str = typer.Option("", help="Customer display name"),
    seller_name: str = typer.Option(None, help="Seller display name"),
    vehicle_name: str = typer.Option("", help="Vehicle display name"),
    price: float = typer.Option(None, help="Vehicle price"),
):
    """Find the conversation for a customer and vehicle, creating it if needed."""

    async def _run() -> Conversation:
        async with Services() as services:
            return await services.store.get_or_create(
                Conversation(
                    id=make_conversation_id(customer, vehicle_id),
                    customer_id=customer,
                    customer_name=customer_name,
                    seller_id=seller,
                    seller_name=seller_name,
                    vehicle_id=vehicle_id,
                    vehicle_name=vehicle_name,
                    vehicle_price=price,
                )
            )

    conversation = asyncio.run(_run())
    typer.echo(conversation.model_dump_json(by_alias=True, exclude_none=True, indent=2))


@app.command()
def send(
    conversation: str = typer.Option(..., help="Conversation id"),
    email: str = typer.Option(..., "--as", help="Sender email"),
    role: str = typer.Option(..., help=ROLE_HELP),
    text: str = typer.Option(..., help="Message text"),
    linger: float = typer.Option(1.0, help="Seconds to wait for delivery status before disconnecting"),
):
    """Persist a message and deliver it live when the channel is up."""
    _check_role(role)

    async def _run():
        async with Services() as services:
            session = services.session
            session.on_delivery(lambda status: typer.echo(f"delivery: {status.status}"))
            await session.connect(email, role)
            message = ChatMessage(
                id=int(time.time() * 1000),
                sender="user" if role == "customer" else "seller",
                text=text,
            )
            result = await session.send_message(conversation, message, email, role)
            if result.success and session.is_connected() and linger > 0:
                await asyncio.sleep(linger)
            pending = len(session.get_pending_messages(conversation))
            return result, pending

    result, pending = asyncio.run(_run())
    if not result.success:
        typer.echo(f"Send failed: {result.error}")
        raise typer.Exit(1)
    typer.echo("Message saved" + (f" ({pending} pending live delivery)" if pending else ""))


@app.command()
def watch(
    email: str = typer.Option(..., "--as", help="Viewer email"),
    role: str = typer.Option(..., help=ROLE_HELP),
    conversation: list[str] = typer.Option(None, help="Conversation id(s) to join"),
    duration: float = typer.Option(None, help="Stop after this many seconds"),
):
    """Open a live terminal view of a chat session."""
    _check_role(role)

    async def _run():
        async with Services() as services:
            session = services.session
            console = ChatConsole(session, conversation[0] if conversation and len(conversation) == 1 else None)
            console.attach()
            await session.connect(email, role)
            await session.join_all_conversations(conversation or [])
            await console.run(duration)

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("watch interrupted")


@app.command()
def stats():
    """Query the relay for live connection stats."""
    resp = httpx.get(f"http://127.0.0.1:{settings.PORT}/stats")
    typer.echo(resp.json())


if __name__ == "__main__":
    app()
