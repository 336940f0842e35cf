"""WebSocket handler for real-time event streaming.

Clients subscribe to a channel: a session id for session lifecycle events, or
``tasks`` for task status and verification events. Clients may send ``ping``
and, on a session channel, ``cancel``.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import EventType, OrchestratorEvent
from execution.session import IllegalTransitionError
from orchestrator import Orchestrator

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()


def _get_orchestrator(websocket: WebSocket) -> Orchestrator:
    orchestrator = getattr(websocket.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("Orchestrator not configured on app.state")
    return orchestrator


@websocket_router.websocket("/ws/{channel}")
async def websocket_endpoint(websocket: WebSocket, channel: str) -> None:
    """Stream a channel's events to the client.

    History is replayed first so reconnecting clients see the whole channel,
    then live events are forwarded until the client disconnects or the
    channel is closed.

    Args:
        websocket: The WebSocket connection.
        channel: Session id or ``tasks``.
    """
    await websocket.accept()
    logger.info("websocket_connected", channel=channel)

    orchestrator = _get_orchestrator(websocket)
    event_bus = orchestrator.event_bus

    # Subscribe before reading history so nothing published in between is lost.
    queue = event_bus.subscribe(channel)

    try:
        last_replay_timestamp = 0.0
        history = event_bus.get_event_history(channel)
        if history:
            logger.info("replaying_event_history", channel=channel, event_count=len(history))
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", channel=channel)
                    return
                except Exception as e:
                    logger.error("websocket_replay_error", channel=channel, error=str(e))
                    return

        async def send_events() -> None:
            """Forward bus events, skipping ones already replayed."""
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.CHANNEL_CLOSED:
                        logger.info("channel_closed_sentinel", channel=channel)
                        break
                    if event.timestamp <= last_replay_timestamp:
                        logger.debug(
                            "event_skipped_duplicate",
                            channel=channel,
                            event_type=event.type.value,
                        )
                        continue
                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", channel=channel)
            except Exception as e:
                logger.error("websocket_send_error", channel=channel, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", channel=channel)
                        continue
                    command_type = data.get("type")
                    logger.info("command_received", channel=channel, command_type=command_type)

                    if command_type == "cancel":
                        await handle_cancel_command(orchestrator, channel)
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command", channel=channel, command_type=command_type
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", channel=channel)
            except Exception as e:
                logger.error("websocket_receive_error", channel=channel, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        _, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", channel=channel)
    except Exception as e:
        logger.error("websocket_error", channel=channel, error=str(e))
    finally:
        event_bus.unsubscribe(channel, queue)
        logger.info("websocket_cleanup_complete", channel=channel)


async def handle_cancel_command(orchestrator: Orchestrator, session_id: str) -> None:
    """Cancel the session a client is watching.

    Failures are reported on the session channel as SESSION_ERROR events.
    """
    logger.info("cancel_command_processing", session_id=session_id)

    error: str | None = None
    if orchestrator.get_session(session_id) is None:
        logger.warning("cancel_command_session_not_found", session_id=session_id)
        error = f"Session {session_id} not found"
    else:
        try:
            orchestrator.cancel_session(session_id)
        except IllegalTransitionError as e:
            logger.warning("cancel_command_rejected", session_id=session_id, error=str(e))
            error = str(e)

    if error is not None:
        await orchestrator.event_bus.publish(
            OrchestratorEvent(
                type=EventType.SESSION_ERROR,
                channel=session_id,
                data={"error": error, "phase": "cancellation"},
            )
        )
