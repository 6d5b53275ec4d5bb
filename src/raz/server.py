"""
Raz - Room relay server using asyncio.

Created by orpheus497

This module exposes RoomService over TCP. Clients send newline-delimited
JSON requests:

    {"id": 1, "command": "post_message", "params": {...}}

and receive a response carrying the same id:

    {"type": "response", "id": 1, "success": true, ...}
    {"type": "response", "id": 1, "success": false, "error": {"code": ..., ...}}

A connection that subscribes to a room additionally receives event frames:

    {"type": "event", "data": {"room_id": ..., "event": ..., "payload": {...}}}

The server relays ciphertext only and never holds room secrets.
"""

import asyncio
import contextlib
import json
import logging
import platform
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console

from .config import Config
from .constants import (
    CLIENT_IDLE_TIMEOUT,
    DEFAULT_HOST,
    DEFAULT_SERVER_PORT,
    PROTOCOL_VERSION,
    READ_CHUNK_SIZE,
)
from .errors import ErrorCode, RazError, ServerError, ValidationError
from .realtime import Subscription
from .service import RoomService
from .utils import create_settings_table, setup_logging, validate_port

logger = logging.getLogger(__name__)


class ServerCommand:
    """Command types for client-server requests."""

    PING = "ping"

    # Rooms
    CREATE_ROOM = "create_room"
    JOIN_ROOM = "join_room"
    GET_META = "get_meta"
    GET_PARTICIPANTS = "get_participants"
    DESTROY_ROOM = "destroy_room"

    # Messages
    POST_MESSAGE = "post_message"
    LIST_MESSAGES = "list_messages"

    # Realtime
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class ClientConnection:
    """State of one connected client."""

    def __init__(self, client_id: int, writer: asyncio.StreamWriter):
        self.client_id = client_id
        self.writer = writer
        self.write_lock = asyncio.Lock()
        self.subscriptions: Dict[str, Subscription] = {}
        self.forwarders: Dict[str, asyncio.Task] = {}


def _require(params: Dict[str, Any], name: str) -> Any:
    value = params.get(name)
    if value is None:
        raise ValidationError(f"Missing parameter: {name}", {"param": name})
    return value


class RazServer:
    """Room relay server."""

    def __init__(
        self,
        service: Optional[RoomService] = None,
        config: Optional[Config] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        """
        Initialize server.

        Args:
            service: Room service to expose (built from config when omitted)
            config: Configuration
            host: Listen address (overrides config)
            port: Listen port, 0 for any free port (overrides config)
        """
        self.config = config
        self.service = service if service is not None else RoomService(config=config)
        self.host = host or (config.get("server", "host", DEFAULT_HOST) if config else DEFAULT_HOST)
        if port is None:
            port = config.get("server", "port", DEFAULT_SERVER_PORT) if config else DEFAULT_SERVER_PORT
        self.port = port
        self.client_timeout = (
            config.get("server", "client_timeout", CLIENT_IDLE_TIMEOUT)
            if config
            else CLIENT_IDLE_TIMEOUT
        )

        self.running = False
        self.tcp_server: Optional[asyncio.AbstractServer] = None
        self.clients: Dict[int, ClientConnection] = {}
        self.client_lock = asyncio.Lock()
        self.next_client_id = 1

    async def start(self) -> bool:
        """
        Start listening for clients.

        Returns:
            True if the server started, False on error
        """
        if not validate_port(self.port):
            logger.error(f"Invalid port: {self.port}")
            return False

        try:
            self.tcp_server = await asyncio.start_server(self._handle_client, self.host, self.port)
        except OSError as e:
            logger.error(f"Failed to start server: {e}", exc_info=True)
            return False

        # Resolve the real port when 0 was requested
        sockets = self.tcp_server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]

        self.running = True
        logger.info(f"Raz server listening on {self.host}:{self.port}")
        return True

    async def stop(self) -> None:
        """Disconnect all clients and stop listening."""
        if not self.running and self.tcp_server is None:
            return

        logger.info("Stopping server...")
        self.running = False

        async with self.client_lock:
            connections = list(self.clients.values())
            self.clients.clear()

        for connection in connections:
            await self._close_connection(connection)

        if self.tcp_server:
            self.tcp_server.close()
            await self.tcp_server.wait_closed()
            self.tcp_server = None

        logger.info("Server stopped")

    async def run(self) -> None:
        """Block until the server is stopped."""
        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.stop()

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """
        Handle one client connection.

        Reads newline-delimited JSON requests and answers each in order.
        Subscriptions opened by the client are forwarded by background tasks
        that share the connection's write lock.
        """
        address = writer.get_extra_info("peername")
        logger.debug(f"Client connected from {address}")

        async with self.client_lock:
            client_id = self.next_client_id
            self.next_client_id += 1
            connection = ClientConnection(client_id, writer)
            self.clients[client_id] = connection

        buffer = b""

        try:
            while self.running:
                try:
                    data = await asyncio.wait_for(
                        reader.read(READ_CHUNK_SIZE), timeout=self.client_timeout
                    )
                except asyncio.TimeoutError:
                    continue

                if not data:
                    break

                buffer += data

                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if not line.strip():
                        continue
                    try:
                        request = json.loads(line.decode("utf-8"))
                    except (json.JSONDecodeError, UnicodeDecodeError) as e:
                        logger.warning(f"Invalid JSON from client {client_id}: {e}")
                        error = ValidationError("Invalid JSON")
                        await self._send(
                            connection,
                            {"type": "response", "success": False, "error": error.to_dict()},
                        )
                        continue

                    response = await self._process_command(connection, request)
                    await self._send(connection, response)

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Client {client_id} connection lost: {e}")
        finally:
            async with self.client_lock:
                self.clients.pop(client_id, None)
            await self._close_connection(connection)
            logger.debug(f"Client {client_id} disconnected")

    async def _send(self, connection: ClientConnection, payload: Dict[str, Any]) -> None:
        data = (json.dumps(payload) + "\n").encode("utf-8")
        async with connection.write_lock:
            connection.writer.write(data)
            await connection.writer.drain()

    async def _close_connection(self, connection: ClientConnection) -> None:
        for room_id in list(connection.subscriptions):
            await self._drop_subscription(connection, room_id)

        try:
            connection.writer.close()
            await connection.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing client {connection.client_id}: {e}")

    async def _process_command(
        self, connection: ClientConnection, request: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Route one request to its handler.

        Args:
            connection: Requesting client
            request: Dictionary with 'id', 'command' and 'params' keys

        Returns:
            Response dictionary with 'type', 'id' and 'success' keys
        """
        is_object = isinstance(request, dict)
        request_id = request.get("id") if is_object else None
        command = request.get("command") if is_object else None
        response: Dict[str, Any] = {"type": "response", "id": request_id}

        try:
            if not is_object:
                raise ValidationError("Request must be a JSON object")

            params = request.get("params") or {}
            if not isinstance(params, dict):
                raise ValidationError("params must be a JSON object")

            if command == ServerCommand.PING:
                result: Dict[str, Any] = {"message": "pong", "protocol": PROTOCOL_VERSION}

            elif command == ServerCommand.CREATE_ROOM:
                result = await self._handle_create_room(params)

            elif command == ServerCommand.JOIN_ROOM:
                result = await self._handle_join_room(params)

            elif command == ServerCommand.GET_META:
                result = await self._handle_get_meta(params)

            elif command == ServerCommand.GET_PARTICIPANTS:
                result = await self._handle_get_participants(params)

            elif command == ServerCommand.DESTROY_ROOM:
                result = await self._handle_destroy_room(params)

            elif command == ServerCommand.POST_MESSAGE:
                result = await self._handle_post_message(params)

            elif command == ServerCommand.LIST_MESSAGES:
                result = await self._handle_list_messages(params)

            elif command == ServerCommand.SUBSCRIBE:
                result = await self._handle_subscribe(connection, params)

            elif command == ServerCommand.UNSUBSCRIBE:
                result = await self._handle_unsubscribe(connection, params)

            else:
                raise ServerError(
                    ErrorCode.E804_INVALID_COMMAND,
                    f"Unknown command: {command}",
                    {"command": command},
                )

        except RazError as e:
            response.update({"success": False, "error": e.to_dict()})
            return response
        except Exception as e:
            logger.error(f"Error processing {command}: {e}", exc_info=True)
            error = ServerError(ErrorCode.E800_SERVER_ERROR, "Internal server error")
            response.update({"success": False, "error": error.to_dict()})
            return response

        response["success"] = True
        response.update(result)
        return response

    async def _handle_create_room(self, params: Dict[str, Any]) -> Dict[str, Any]:
        room = await self.service.create_room(
            mode=params.get("mode", "pair"),
            passcode=params.get("passcode"),
            privileged_secret=params.get("privileged_secret"),
        )
        return {"room": room}

    async def _handle_join_room(self, params: Dict[str, Any]) -> Dict[str, Any]:
        decision = await self.service.join_room(
            _require(params, "room_id"),
            membership_token=params.get("token"),
            passcode=params.get("passcode"),
        )
        return {"decision": decision.to_dict()}

    async def _handle_get_meta(self, params: Dict[str, Any]) -> Dict[str, Any]:
        meta = await self.service.get_meta(_require(params, "room_id"), params.get("token"))
        return {"meta": meta}

    async def _handle_get_participants(self, params: Dict[str, Any]) -> Dict[str, Any]:
        count = await self.service.get_participant_count(
            _require(params, "room_id"), params.get("token")
        )
        return {"count": count}

    async def _handle_destroy_room(self, params: Dict[str, Any]) -> Dict[str, Any]:
        await self.service.destroy_room(_require(params, "room_id"), params.get("token"))
        return {}

    async def _handle_post_message(self, params: Dict[str, Any]) -> Dict[str, Any]:
        message = await self.service.post_message(
            _require(params, "room_id"),
            params.get("token"),
            params.get("sender_token"),
            params.get("ciphertext"),
            params.get("iv"),
            params.get("step"),
        )
        return {"message": message.to_dict()}

    async def _handle_list_messages(self, params: Dict[str, Any]) -> Dict[str, Any]:
        messages = await self.service.list_messages(
            _require(params, "room_id"), params.get("token")
        )
        return {"messages": [message.to_dict() for message in messages]}

    async def _handle_subscribe(
        self, connection: ClientConnection, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        room_id = _require(params, "room_id")
        if room_id not in connection.subscriptions:
            subscription = await self.service.subscribe(room_id, params.get("token"))
            connection.subscriptions[room_id] = subscription
            connection.forwarders[room_id] = asyncio.create_task(
                self._forward_events(connection, subscription)
            )
            logger.debug(f"Client {connection.client_id} subscribed to {room_id}")
        return {"room_id": room_id}

    async def _handle_unsubscribe(
        self, connection: ClientConnection, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        room_id = _require(params, "room_id")
        await self._drop_subscription(connection, room_id)
        return {"room_id": room_id}

    async def _drop_subscription(self, connection: ClientConnection, room_id: str) -> None:
        subscription = connection.subscriptions.pop(room_id, None)
        if subscription:
            subscription.close()

        task = connection.forwarders.pop(room_id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _forward_events(
        self, connection: ClientConnection, subscription: Subscription
    ) -> None:
        """Push a subscription's events to the client as event frames."""
        try:
            async for envelope in subscription:
                await self._send(connection, {"type": "event", "data": envelope.to_dict()})
        except (ConnectionError, OSError) as e:
            logger.debug(f"Stopped forwarding to client {connection.client_id}: {e}")
        finally:
            subscription.close()


async def async_main():
    """Async main entry point for the server."""
    import argparse

    parser = argparse.ArgumentParser(description="Raz Server - ephemeral encrypted room relay")

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: ~/.raz/config.toml)",
    )

    parser.add_argument("--host", type=str, default=None, help="Address to listen on")

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help=f"Port to listen on (default: {DEFAULT_SERVER_PORT})",
    )

    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    parser.add_argument(
        "--write-config",
        action="store_true",
        help="Write the effective configuration to the config file and exit",
    )

    args = parser.parse_args()

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except RazError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)

    if args.host:
        config.set("server", "host", args.host)
    if args.port is not None:
        config.set("server", "port", args.port)

    if args.write_config:
        try:
            config.save()
        except RazError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            sys.exit(1)
        print(f"Configuration written to {config.config_path}")
        return

    setup_logging(config, debug=args.debug)

    server = RazServer(config=config)

    Console(stderr=True).print(
        create_settings_table(config.to_dict(), hidden=["master_passcode"])
    )

    if not await server.start():
        sys.exit(1)

    if platform.system() != "Windows":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: setattr(server, "running", False))

    await server.run()


def main():
    """Main entry point - runs async_main."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(async_main())


if __name__ == "__main__":
    main()
