import trio, h11, logging
from http import HTTPStatus
from wsgiref.handlers import format_date_time
from typing import Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

MAX_RECV = 2 ** 16

Header = Tuple[Union[str, bytes], Union[str, bytes]]


class TrioHTTPConnection:
    """
    An h11 connection bound to a trio stream.

    Works as either side of the conversation: the proxy talks to clients
    with `role=h11.SERVER` and to upstream servers with `role=h11.CLIENT`.
    """

    def __init__(self,
            stream: trio.abc.Stream,
            role=h11.SERVER,
            shutdown_timeout: float = 10,
            read_timeout: Optional[float] = None,
            ):
        self.stream = stream
        self.conn = h11.Connection(our_role=role)
        self.shutdown_timeout = shutdown_timeout
        self.read_timeout = read_timeout
        self.ident = f"forwardproxy/{h11.__version__} {h11.PRODUCT_ID}".encode("ascii")
        self._obj_id = f"{id(self):x}"
        self._shut_down = False

    async def send(self, event) -> None:
        assert type(event) is not h11.ConnectionClosed
        data = self.conn.send(event)
        try:
            await self.stream.send_all(data)
        except BaseException:
            self.conn.send_failed()
            raise

    async def _read_from_peer(self) -> None:
        if self.conn.our_role is h11.SERVER and self.conn.they_are_waiting_for_100_continue:
            self.info("Sending 100 Continue")
            go_ahead = h11.InformationalResponse(status_code=100, headers=self.basic_headers())
            await self.send(go_ahead)

        try:
            if self.read_timeout is None:
                data = await self.stream.receive_some(MAX_RECV)
            else:
                with trio.fail_after(self.read_timeout):
                    data = await self.stream.receive_some(MAX_RECV)
        except (ConnectionError, trio.BrokenResourceError):
            # The peer is gone; h11 turns this into ConnectionClosed or an error.
            data = b""
        self.conn.receive_data(data)

    async def next_event(self):
        while True:
            event = self.conn.next_event()
            if event is h11.NEED_DATA:
                await self._read_from_peer()
                continue
            return event

    def can_send_response(self) -> bool:
        return self.conn.our_state in {h11.IDLE, h11.SEND_RESPONSE}

    async def send_error(self, status_code: int, msg: str, headers: Iterable[Header] = ()) -> None:
        """
        Send a complete plain-text error response and mark the connection
        for closing. Does nothing if a response is already under way.
        """
        if not self.can_send_response():
            self.info(f"Cannot send {status_code}: our state is {self.conn.our_state}")
            return

        self.info(f"Sending {status_code}: {msg}")
        body = f"{msg}\n".encode("utf-8")
        response_headers = self.basic_headers() + list(headers) + [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("Content-Length", str(len(body))),
            ("Connection", "close"),
        ]
        await self.send(h11.Response(
            status_code=status_code,
            reason=HTTPStatus(status_code).phrase,
            headers=response_headers,
        ))
        await self.send(h11.Data(data=body))
        await self.send(h11.EndOfMessage())

    async def ensure_shutdown(self) -> None:
        """
        Close the connection, giving the peer `shutdown_timeout` seconds
        to notice and close its end first. Safe to call more than once.
        """
        if self._shut_down:
            return
        self._shut_down = True

        try:
            await self.stream.send_eof()
        except (trio.BrokenResourceError, trio.ClosedResourceError):
            await self.stream.aclose()
            return

        with trio.move_on_after(self.shutdown_timeout):
            try:
                while True:
                    got = await self.stream.receive_some(MAX_RECV)
                    if not got:
                        break
            except (trio.BrokenResourceError, trio.ClosedResourceError):
                pass
            finally:
                await self.stream.aclose()

    def basic_headers(self) -> List[Header]:
        return [
            ("Date", format_date_time(None).encode("ascii")),
            ("Server", self.ident),
        ]

    def info(self, msg: str) -> None:
        logger.info("%s: %s", self._obj_id, msg)
