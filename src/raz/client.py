"""
Raz - Client API for communicating with a Raz server using asyncio.

Created by orpheus497

RazClient exposes the same call signatures as RoomService, so a
RoomClientSession works unchanged against either. Server-side failures come
back as the matching RazError subclass and room events are delivered through
Subscription objects.
"""

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, List, Optional, Set, Union

from .admission import AdmissionDecision
from .constants import (
    CLIENT_CONNECT_TIMEOUT,
    CLIENT_REQUEST_TIMEOUT,
    DEFAULT_HOST,
    DEFAULT_SERVER_PORT,
    READ_CHUNK_SIZE,
)
from .errors import ErrorCode, RazError, ServerError, error_from_dict
from .message import Message
from .realtime import RealtimeEnvelope, Subscription
from .room import RoomMode
from .server import ServerCommand

logger = logging.getLogger(__name__)


class RazClient:
    """Async client for communicating with a Raz server."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_SERVER_PORT,
        request_timeout: float = CLIENT_REQUEST_TIMEOUT,
    ):
        """
        Initialize client.

        Args:
            host: Server host
            port: Server port
            request_timeout: Seconds to wait for each response
        """
        self.host = host
        self.port = port
        self.request_timeout = request_timeout
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.connected = False

        # Receive task
        self.receive_task: Optional[asyncio.Task] = None
        self.running = False
        self.buffer = b""

        # Outstanding requests by id
        self.pending: Dict[int, asyncio.Future] = {}
        self.next_request_id = 1
        self.write_lock = asyncio.Lock()

        # Local subscriptions by room
        self.subscriptions: Dict[str, Set[Subscription]] = {}
        self._background: Set[asyncio.Task] = set()

    async def connect(self) -> bool:
        """Connect to server."""
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=CLIENT_CONNECT_TIMEOUT
            )
        except asyncio.TimeoutError:
            logger.error("Connection timeout")
            self.connected = False
            return False
        except OSError as e:
            logger.error(f"Connection failed: {e}")
            self.connected = False
            return False

        self.connected = True
        self.running = True
        self.receive_task = asyncio.create_task(self._receive_loop())

        logger.info(f"Connected to server at {self.host}:{self.port}")
        return True

    async def disconnect(self) -> None:
        """Disconnect from server."""
        self.running = False
        self.connected = False

        if self.receive_task and not self.receive_task.done():
            self.receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.receive_task

        for task in list(self._background):
            task.cancel()
        self._background.clear()

        if self.writer:
            try:
                self.writer.close()
                await self.writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing writer: {e}")
            self.writer = None

        self.reader = None
        self._fail_pending("Disconnected from server")
        self._close_subscriptions()

    async def __aenter__(self) -> "RazClient":
        if not await self.connect():
            raise ServerError(
                ErrorCode.E800_SERVER_ERROR,
                f"Could not connect to {self.host}:{self.port}",
                {"host": self.host, "port": self.port},
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def _receive_loop(self) -> None:
        """Background task for receiving responses and events."""
        logger.debug("Receive loop started")

        try:
            while self.running and self.connected:
                data = await self.reader.read(READ_CHUNK_SIZE)
                if not data:
                    logger.warning("Server closed connection")
                    break

                self.buffer += data

                while b"\n" in self.buffer:
                    line, self.buffer = self.buffer.split(b"\n", 1)
                    if not line.strip():
                        continue
                    try:
                        message = json.loads(line.decode("utf-8"))
                    except (json.JSONDecodeError, UnicodeDecodeError) as e:
                        logger.warning(f"Invalid JSON from server: {e}")
                        continue
                    if isinstance(message, dict):
                        self._handle_message(message)

        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as e:
            logger.error(f"Connection error in receive loop: {e}")
        finally:
            self.connected = False
            self._fail_pending("Connection to server lost")
            self._close_subscriptions()
            logger.debug("Receive loop ended")

    def _handle_message(self, message: Dict[str, Any]) -> None:
        """Route a received frame to a waiting request or subscribers."""
        if message.get("type") == "event":
            try:
                envelope = RealtimeEnvelope.from_dict(message.get("data") or {})
            except (KeyError, ValueError) as e:
                logger.warning(f"Malformed event from server: {e}")
                return
            for subscription in list(self.subscriptions.get(envelope.channel, ())):
                if not subscription.deliver(envelope):
                    logger.warning(f"Dropped {envelope.event.value} event for {envelope.channel}")
            return

        future = self.pending.pop(message.get("id"), None)
        if future is None:
            logger.debug(f"Unmatched response from server: {message.get('id')}")
            return
        if not future.done():
            future.set_result(message)

    def _fail_pending(self, reason: str) -> None:
        for future in self.pending.values():
            if not future.done():
                future.set_exception(ServerError(ErrorCode.E800_SERVER_ERROR, reason))
        self.pending.clear()

    def _close_subscriptions(self) -> None:
        for subscriptions in list(self.subscriptions.values()):
            for subscription in list(subscriptions):
                subscription.close()
        self.subscriptions.clear()

    async def _send_request(
        self, command: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Send request to server and wait for response.

        Args:
            command: Command to execute
            params: Command parameters

        Returns:
            Successful response from server

        Raises:
            RazError: The server's error, rebuilt as its matching class
            ServerError: If not connected or the request timed out
        """
        if not self.connected or self.writer is None:
            raise ServerError(ErrorCode.E800_SERVER_ERROR, "Not connected to server")

        request_id = self.next_request_id
        self.next_request_id += 1
        future = asyncio.get_running_loop().create_future()
        self.pending[request_id] = future

        request = {"id": request_id, "command": command, "params": params or {}}
        try:
            async with self.write_lock:
                self.writer.write((json.dumps(request) + "\n").encode("utf-8"))
                await self.writer.drain()
        except (ConnectionError, OSError) as e:
            self.pending.pop(request_id, None)
            raise ServerError(
                ErrorCode.E800_SERVER_ERROR, f"Failed to send request: {e}", {"command": command}
            ) from e

        try:
            response = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            self.pending.pop(request_id, None)
            logger.warning(f"Request timeout for command: {command}")
            raise ServerError(
                ErrorCode.E005_OPERATION_FAILED, "Request timeout", {"command": command}
            ) from e

        if not response.get("success"):
            raise error_from_dict(response.get("error") or {})
        return response

    async def ping(self) -> bool:
        response = await self._send_request(ServerCommand.PING)
        return response.get("message") == "pong"

    async def create_room(
        self,
        mode: Union[str, RoomMode] = RoomMode.PAIR,
        passcode: Optional[str] = None,
        privileged_secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"mode": mode.value if isinstance(mode, RoomMode) else mode}
        if passcode is not None:
            params["passcode"] = passcode
        if privileged_secret is not None:
            params["privileged_secret"] = privileged_secret
        response = await self._send_request(ServerCommand.CREATE_ROOM, params)
        return response["room"]

    async def join_room(
        self,
        room_id: str,
        membership_token: Optional[str] = None,
        passcode: Optional[str] = None,
    ) -> AdmissionDecision:
        response = await self._send_request(
            ServerCommand.JOIN_ROOM,
            {"room_id": room_id, "token": membership_token, "passcode": passcode},
        )
        decision = AdmissionDecision.from_dict(response["decision"])
        decision.room_id = room_id
        return decision

    async def get_meta(self, room_id: str, membership_token: Optional[str]) -> Dict[str, Any]:
        response = await self._send_request(
            ServerCommand.GET_META, {"room_id": room_id, "token": membership_token}
        )
        return response["meta"]

    async def get_participant_count(self, room_id: str, membership_token: Optional[str]) -> int:
        response = await self._send_request(
            ServerCommand.GET_PARTICIPANTS, {"room_id": room_id, "token": membership_token}
        )
        return response["count"]

    async def destroy_room(self, room_id: str, membership_token: Optional[str]) -> None:
        await self._send_request(
            ServerCommand.DESTROY_ROOM, {"room_id": room_id, "token": membership_token}
        )

    async def post_message(
        self,
        room_id: str,
        membership_token: Optional[str],
        sender_token: str,
        ciphertext: str,
        iv: str,
        step: int,
    ) -> Message:
        response = await self._send_request(
            ServerCommand.POST_MESSAGE,
            {
                "room_id": room_id,
                "token": membership_token,
                "sender_token": sender_token,
                "ciphertext": ciphertext,
                "iv": iv,
                "step": step,
            },
        )
        return Message.from_dict(response["message"])

    async def list_messages(self, room_id: str, membership_token: Optional[str]) -> List[Message]:
        response = await self._send_request(
            ServerCommand.LIST_MESSAGES, {"room_id": room_id, "token": membership_token}
        )
        return [Message.from_dict(data) for data in response["messages"]]

    async def subscribe(self, room_id: str, membership_token: Optional[str]) -> Subscription:
        """Subscribe to a room's events. Close the subscription to stop."""
        await self._send_request(
            ServerCommand.SUBSCRIBE, {"room_id": room_id, "token": membership_token}
        )
        subscription = Subscription(room_id, on_close=self._release)
        self.subscriptions.setdefault(room_id, set()).add(subscription)
        return subscription

    def _release(self, subscription: Subscription) -> None:
        subscribers = self.subscriptions.get(subscription.channel)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if subscribers:
            return

        del self.subscriptions[subscription.channel]
        if self.connected:
            task = asyncio.create_task(self._unsubscribe(subscription.channel))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _unsubscribe(self, room_id: str) -> None:
        try:
            await self._send_request(ServerCommand.UNSUBSCRIBE, {"room_id": room_id})
        except RazError as e:
            logger.debug(f"Unsubscribe from {room_id} failed: {e.message}")
