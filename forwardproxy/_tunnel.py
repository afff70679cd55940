import trio, h11
from typing import Optional, Tuple

from ._adapter import TrioHTTPConnection
from ._auth import verify, allowed
from ._config import Configuration, Port
from ._relay import PROXY_AUTHENTICATE, get_header

DEFAULT_TUNNEL_PORT = Port(443)

CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"


def parse_tunnel_destination(target: str) -> Tuple[str, Port]:
    """
    Split a CONNECT target into host and port.

    A missing or non-numeric port means 443. A numeric port outside
    0-65535, or an empty host, raises ValueError.
    """
    if target.startswith("["):
        end = target.find("]")
        if end == -1:
            raise ValueError(f"Unterminated IPv6 literal: {target!r}")
        host, rest = target[1:end], target[end + 1:]
        port_string = rest[1:] if rest.startswith(":") else ""
    else:
        host, _, port_string = target.partition(":")

    if not host:
        raise ValueError(f"No host in {target!r}")

    if not port_string.isdigit():
        return host, DEFAULT_TUNNEL_PORT
    port = int(port_string)
    if port not in range(65536):
        raise ValueError(f"Port number out of range: {port}")
    return host, Port(port)


async def establish_tunnel(w: TrioHTTPConnection, request: h11.Request, config: Configuration) -> None:
    """
    Handle one CONNECT request: check it, connect upstream, and splice
    the two connections together until either side is done.

    `request` must already have been read to its EndOfMessage.
    """
    if not verify(get_header(request.headers, b"proxy-authorization"), config.username, config.password):
        await w.send_error(407, "Proxy authentication required", headers=[PROXY_AUTHENTICATE])
        return

    target = request.target.decode("ascii")  # h11 ensures that this cannot break
    try:
        host, port = parse_tunnel_destination(target)
    except ValueError as e:
        await w.send_error(400, f"Malformed tunnel destination {target!r}: {e}")
        return

    if not allowed(host, config.allowed_hosts):
        await w.send_error(403, f"Forbidden: {host} is not on the allow-list")
        return

    w.info(f"Making TCP connection to {host}:{port}")
    try:
        with trio.fail_after(config.connect_timeout):
            target_stream = await trio.open_tcp_stream(host, int(port))  # takes _exactly_ int
    except (OSError, trio.TooSlowError) as e:
        w.info(f"TCP connection to {host}:{port} failed: {e!r}")
        await w.send_error(502, "Bad Gateway")
        return

    async with target_stream:
        # h11 only tracks the switch; the client gets the bare status line,
        # without the Connection: close h11 would add for an HTTP/1.0 client.
        w.conn.send(h11.Response(status_code=200, reason="Connection Established", headers=[]))
        await w.stream.send_all(CONNECTION_ESTABLISHED)
        assert w.conn.our_state == w.conn.their_state == h11.SWITCHED_PROTOCOL

        # Anything the client pipelined after the request head belongs to the tunnel.
        head, _ = w.conn.trailing_data
        if head:
            try:
                await target_stream.send_all(head)
            except trio.BrokenResourceError:
                w.info("Upstream went away before the tunnel started")
                return

        await splice(w.stream, target_stream, idle_timeout=config.idle_timeout)
    w.info("TCP connection ended")


async def splice(a: trio.abc.Stream, b: trio.abc.Stream, idle_timeout: Optional[float] = None) -> None:
    """
    "Splices" two TCP streams into one.
    That is, it forwards everything from a to b, and vice versa.

    When one part of the connection breaks or finishes, it cleans up
    the other one and returns.
    """
    async with a:
        async with b:
            async with trio.open_nursery() as nursery:
                # From RFC 7231, §4.3.6:
                # ----------------------
                # A tunnel is closed when a tunnel intermediary detects that
                # either side has closed its connection: the intermediary MUST
                # attempt to send any outstanding data that came from the
                # closed side to the other side, close both connections,
                # and then discard any remaining data left undelivered.

                # This holds, because the coroutines below run until one tries
                # to read from a closed socket, at which point both are cancelled.
                #
                # The idle deadline is shared: traffic in either direction
                # keeps the whole tunnel alive.
                if idle_timeout is not None:
                    nursery.cancel_scope.deadline = trio.current_time() + idle_timeout
                nursery.start_soon(forward, a, b, nursery.cancel_scope, idle_timeout)
                nursery.start_soon(forward, b, a, nursery.cancel_scope, idle_timeout)


async def forward(
        source: trio.abc.Stream,
        sink: trio.abc.Stream,
        cancel_scope: trio.CancelScope,
        idle_timeout: Optional[float] = None,
    ) -> None:
    while True:
        try:
            chunk = await source.receive_some(max_bytes=16384)
            if chunk:
                if idle_timeout is not None:
                    cancel_scope.deadline = trio.current_time() + idle_timeout
                await sink.send_all(chunk)
            else:
                break  # nothing more to read
        except (trio.BrokenResourceError, trio.ClosedResourceError):
            break

    cancel_scope.cancel()
