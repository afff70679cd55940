import trio, h11, ssl
from urllib.parse import urlsplit, urlunsplit, SplitResult
from typing import List, Optional, Tuple

from ._adapter import TrioHTTPConnection, MAX_RECV
from ._auth import verify, allowed
from ._config import Configuration

PROXY_AUTHENTICATE = ("Proxy-Authenticate", 'Basic realm="Proxy"')

# Proxy-specific headers which the client meant for us, not for the server.
# Host is replaced by the authority of the resolved URL.
REQUEST_HEADERS_NOT_FORWARDED = {b"proxy-authorization", b"proxy-connection", b"connection", b"host"}

HOP_BY_HOP_RESPONSE_HEADERS = {
    b"transfer-encoding",
    b"connection",
    b"keep-alive",
    b"proxy-authenticate",
    b"proxy-authorization",
    b"te",
    b"trailer",
    b"upgrade",
}

DEFAULT_PORTS = {"http": 80, "https": 443}

Headers = List[Tuple[bytes, bytes]]


class UpstreamError(Exception):
    """The upstream server could not be reached, or broke off mid-exchange."""


def get_header(headers, name: bytes) -> Optional[str]:
    for key, value in headers:
        if key == name:
            return value.decode("latin-1")
    return None


################################################################
#                  Pure helpers
################################################################

def resolve_target(request: h11.Request) -> Optional[SplitResult]:
    """
    Work out which URL the client wants.

    Absolute-form targets are used as they are; origin-form targets are
    combined with the Host header. Returns None if the target cannot be
    resolved into an http(s) URL with a hostname and a valid port.
    """
    target = request.target.decode("latin-1")
    try:
        if target.lower().startswith(("http://", "https://")):
            url = urlsplit(target)
        else:
            host = get_header(request.headers, b"host")
            if not host:
                return None
            url = urlsplit(f"http://{host}{target}")
        url.port  # raises ValueError for a malformed port
    except ValueError:
        return None

    if url.scheme.lower() not in DEFAULT_PORTS or not url.hostname:
        return None
    return url


def forwardable_request_headers(headers, url: SplitResult) -> Headers:
    forwarded = [(k, v) for k, v in headers if k not in REQUEST_HEADERS_NOT_FORWARDED]
    forwarded.insert(0, (b"host", url.netloc.rpartition("@")[2].encode("ascii")))
    # Upstream connections are never reused.
    forwarded.append((b"connection", b"close"))
    return forwarded


def forwardable_response_headers(headers) -> Headers:
    return [(k, v) for k, v in headers if k not in HOP_BY_HOP_RESPONSE_HEADERS]


################################################################
#                  Upstream I/O
################################################################

async def open_upstream(url: SplitResult, connect_timeout: float) -> trio.abc.Stream:
    host = url.hostname
    port = url.port or DEFAULT_PORTS[url.scheme.lower()]
    try:
        with trio.fail_after(connect_timeout):
            stream = await trio.open_tcp_stream(host, port)
    except (OSError, trio.TooSlowError) as e:
        raise UpstreamError(f"Connecting to {host}:{port} failed: {e!r}") from e

    if url.scheme.lower() == "https":
        stream = trio.SSLStream(stream, ssl.create_default_context(), server_hostname=host)
    return stream


async def upstream_call(coro):
    """Await `coro`, turning any transport-level failure into UpstreamError."""
    try:
        return await coro
    except (OSError, trio.BrokenResourceError, trio.TooSlowError, h11.ProtocolError) as e:
        raise UpstreamError(repr(e)) from e


async def next_upstream_event(upstream: TrioHTTPConnection):
    event = await upstream_call(upstream.next_event())
    if isinstance(event, h11.ConnectionClosed) or event is h11.PAUSED:
        raise UpstreamError("Upstream closed the connection before the response was complete")
    return event


################################################################
#                  The relay
################################################################

async def relay_request(w: TrioHTTPConnection, request: h11.Request, config: Configuration) -> None:
    """
    Relay one standard (non-CONNECT) request to its destination, and the
    response back to the client.

    Authentication and destination checks come first; nothing is sent
    upstream unless both pass.
    """
    if not verify(get_header(request.headers, b"proxy-authorization"), config.username, config.password):
        await w.send_error(407, "Proxy authentication required", headers=[PROXY_AUTHENTICATE])
        return

    url = resolve_target(request)
    if url is None:
        await w.send_error(400, f"Bad Request: cannot resolve target {request.target!r}")
        return

    if not allowed(url.hostname, config.allowed_hosts):
        await w.send_error(403, f"Forbidden: {url.hostname} is not on the allow-list")
        return

    outbound = h11.Request(
        method=request.method,
        target=urlunsplit(("", "", url.path or "/", url.query, "")),
        headers=forwardable_request_headers(request.headers, url),
    )

    w.info(f"Relaying {request.method.decode('latin-1')} {urlunsplit(url)}")
    try:
        stream = await open_upstream(url, config.connect_timeout)
        async with stream:
            upstream = TrioHTTPConnection(stream, role=h11.CLIENT, read_timeout=config.idle_timeout)
            await upstream_call(upstream.send(outbound))

            # Request body, chunk by chunk
            while True:
                event = await w.next_event()
                if isinstance(event, h11.Data):
                    await upstream_call(upstream.send(event))
                elif isinstance(event, h11.EndOfMessage):
                    await upstream_call(upstream.send(h11.EndOfMessage()))
                    break
                else:
                    raise h11.RemoteProtocolError(f"Unexpected event in request body: {event!r}")

            # From here on nothing reads the client, so watch it for a hang-up.
            failure = None
            async with trio.open_nursery() as nursery:
                nursery.start_soon(watch_for_hangup, w, nursery.cancel_scope)
                try:
                    await relay_response(w, upstream)
                except (UpstreamError, trio.BrokenResourceError) as e:
                    failure = e
                nursery.cancel_scope.cancel()
            if failure is not None:
                raise failure

    except UpstreamError as e:
        w.info(f"Upstream failure for {urlunsplit(url)}: {e}")
        # Once the response head has gone out, the best we can do is hang up.
        await w.send_error(502, "Bad Gateway")


async def relay_response(w: TrioHTTPConnection, upstream: TrioHTTPConnection) -> None:
    response = await next_upstream_event(upstream)
    while isinstance(response, h11.InformationalResponse):
        response = await next_upstream_event(upstream)

    await w.send(h11.Response(
        status_code=response.status_code,
        reason=response.reason,
        headers=forwardable_response_headers(response.headers),
    ))

    # Response body: each chunk is delivered before the next is read.
    while True:
        event = await next_upstream_event(upstream)
        if isinstance(event, h11.Data):
            await w.send(h11.Data(data=event.data))
        elif isinstance(event, h11.EndOfMessage):
            await w.send(h11.EndOfMessage())
            break


async def watch_for_hangup(w: TrioHTTPConnection, cancel_scope: trio.CancelScope) -> None:
    """
    Cancel `cancel_scope` if the client closes its connection while the
    response is still being relayed.
    """
    try:
        data = await w.stream.receive_some(MAX_RECV)
    except (trio.BrokenResourceError, trio.ClosedResourceError):
        data = b""

    if data:
        # A pipelined request; h11 holds on to it for the next cycle.
        w.conn.receive_data(data)
        return

    w.info("Client hung up before the response was complete")
    cancel_scope.cancel()
