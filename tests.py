import trio, random, threading, socket, base64
import trio.testing, pytest, h11
from datetime import timedelta
from functools import partial, wraps
from hypothesis import given, settings, HealthCheck, assume
from hypothesis.strategies import data, integers, binary, floats, lists, builds, text, characters, one_of, none, randoms

from typing import Callable, List, Optional, Tuple

from forwardproxy._config import (
    Configuration, Domain, Port,
    parse_configuration_v1, load_configuration_from_environment, load_configuration_from_file,
)
from forwardproxy._auth import parse_basic_credentials, verify, strip_port, allowed
from forwardproxy._adapter import TrioHTTPConnection
from forwardproxy._tunnel import splice, parse_tunnel_destination
from forwardproxy._relay import resolve_target, forwardable_request_headers, forwardable_response_headers
from forwardproxy._proxy import handle, ForwardProxy, run_synchronously_cancellable_proxy

settings.register_profile("network", deadline=None, max_examples=25)
settings.load_profile("network")


def basic(username: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode("ascii")

GOOD_AUTH = basic("alice", "secret123")

CONFIG = Configuration(
    port=Port(8080),
    username="alice",
    password="secret123",
    allowed_hosts=(Domain("api.example.com"),),
    connect_timeout=5,
    idle_timeout=5,
    request_timeout=5,
)
OPEN_CONFIG = CONFIG._replace(allowed_hosts=())

ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"

################################################################
#                  Authenticator
################################################################

def test_parse_basic_credentials() -> None:
    assert parse_basic_credentials(GOOD_AUTH) == ("alice", "secret123")
    assert parse_basic_credentials("bAsIc   " + GOOD_AUTH.split()[1]) == ("alice", "secret123")

    for bad in [None, "", "Basic", "Bearer abc", "Basic !!!notbase64!!!",
                "Basic " + base64.b64encode(b"no-colon-here").decode(),
                "Basic " + base64.b64encode(b"\xff\xfe:\xff").decode()]:
        assert parse_basic_credentials(bad) is None, bad


def test_password_may_contain_colons() -> None:
    header = basic("alice", "pa:ss:word")
    assert parse_basic_credentials(header) == ("alice", "pa:ss:word")
    assert verify(header, "alice", "pa:ss:word")
    assert not verify(header, "alice", "pa")


printable = text(characters(min_codepoint=0x21, max_codepoint=0x7E), max_size=20)

@given(username=printable.filter(lambda s: ":" not in s), password=printable)
def test_verify_accepts_only_the_configured_pair(username: str, password: str) -> None:
    header = basic(username, password)
    assert verify(header, username, password)
    assert not verify(header, username, password + "x")
    assert not verify(header, username + "x", password)


@given(value=one_of(none(), text()))
def test_verify_never_raises(value: Optional[str]) -> None:
    assert verify(value, "alice", "secret123") in (True, False)

################################################################
#                  Destination authorizer
################################################################

def test_strip_port() -> None:
    assert strip_port("example.com") == "example.com"
    assert strip_port("example.com:8080") == "example.com"
    assert strip_port("[::1]:443") == "::1"
    assert strip_port("::1") == "::1"


def test_allow_list() -> None:
    allow_list = ["api.example.com"]
    assert allowed("api.example.com", allow_list)
    assert allowed("api.example.com:443", allow_list)
    assert allowed("API.Example.COM", allow_list)
    assert not allowed("evil.com", allow_list)
    assert not allowed("sub.api.example.com", allow_list)
    assert not allowed("example.com", allow_list)


@given(hostname=text())
def test_empty_allow_list_allows_everything(hostname: str) -> None:
    assert allowed(hostname, [])
    assert allowed(hostname, ())

################################################################
#                  Configuration
################################################################

def test_configuration_from_environment() -> None:
    config = load_configuration_from_environment({
        "PORT": "3128",
        "PROXY_USER": "alice",
        "PROXY_PASS": "secret123",
        "WHITELIST_HOSTS": " api.example.com, ,other.example.com ",
        "PROXY_CONNECT_TIMEOUT": "2.5",
        "UNRELATED": "ignored",
    })
    assert config.port == 3128
    assert (config.username, config.password) == ("alice", "secret123")
    assert config.allowed_hosts == ("api.example.com", "other.example.com")
    assert config.connect_timeout == 2.5
    assert config.idle_timeout == 300


def test_configuration_defaults() -> None:
    config = load_configuration_from_environment({})
    assert config.port == 8080
    assert (config.username, config.password) == ("proxyuser", "proxypass")
    assert config.allowed_hosts == ()


@pytest.mark.parametrize("raw", [
    {"port": "eighty"},
    {"port": 70000},
    {"connect_timeout": 0},
    {"idle_timeout": "soon"},
    {"allowed_hosts": [1, 2]},
    {"version": 2},
    {"colour": "blue"},
])
def test_bad_configuration(raw) -> None:
    with pytest.raises(ValueError):
        parse_configuration_v1(raw)


def test_configuration_from_file(tmp_path) -> None:
    path = tmp_path / "proxy.toml"
    path.write_text(
        'version = 1\n'
        'port = 9000\n'
        'username = "alice"\n'
        'password = "secret123"\n'
        'allowed_hosts = ["api.example.com"]\n'
        'idle_timeout = 60\n'
    )
    config = load_configuration_from_file(path)
    assert config == CONFIG._replace(port=9000, idle_timeout=60, connect_timeout=10, request_timeout=10)

    path.write_text("port = \n")
    with pytest.raises(ValueError):
        load_configuration_from_file(path)

################################################################
#                  Target parsing
################################################################

def test_parse_tunnel_destination() -> None:
    assert parse_tunnel_destination("example.com:8443") == ("example.com", 8443)
    assert parse_tunnel_destination("example.com") == ("example.com", 443)
    assert parse_tunnel_destination("example.com:https") == ("example.com", 443)
    assert parse_tunnel_destination("example.com:") == ("example.com", 443)
    assert parse_tunnel_destination("[::1]:8080") == ("::1", 8080)
    for bad in [":443", "example.com:99999", "[::1"]:
        with pytest.raises(ValueError):
            parse_tunnel_destination(bad)


def request(target: str, headers: List[Tuple[str, str]] = [], http_version: str = "1.1") -> h11.Request:
    return h11.Request(method="GET", target=target, headers=headers, http_version=http_version)


def test_resolve_target() -> None:
    url = resolve_target(request("http://api.example.com/data?x=1", [("Host", "ignored")]))
    assert (url.hostname, url.port, url.path, url.query) == ("api.example.com", None, "/data", "x=1")

    url = resolve_target(request("/data", [("Host", "api.example.com:8080")]))
    assert (url.scheme, url.hostname, url.port, url.path) == ("http", "api.example.com", 8080, "/data")

    assert resolve_target(request("/data", http_version="1.0")) is None
    assert resolve_target(request("http://api.example.com:port/", [("Host", "api.example.com")])) is None
    assert resolve_target(request("ftp://api.example.com/", [("Host", "api.example.com")])) is None


def test_hop_by_hop_response_headers_are_dropped() -> None:
    response = h11.Response(status_code=200, headers=[
        ("Content-Type", "text/plain"),
        ("Connection", "keep-alive"),
        ("Keep-Alive", "timeout=5"),
        ("Transfer-Encoding", "chunked"),
        ("Upgrade", "h2c"),
        ("Trailer", "Expires"),
        ("Proxy-Authenticate", "Basic"),
        ("X-Custom", "yes"),
    ])
    assert forwardable_response_headers(response.headers) == [
        (b"content-type", b"text/plain"),
        (b"x-custom", b"yes"),
    ]


def test_host_header_follows_the_target() -> None:
    req = request("http://api.example.com:8080/data", [
        ("Host", "evil.com"),
        ("Proxy-Authorization", GOOD_AUTH),
        ("Connection", "keep-alive"),
        ("X-Client", "hello"),
    ])
    assert forwardable_request_headers(req.headers, resolve_target(req)) == [
        (b"host", b"api.example.com:8080"),
        (b"x-client", b"hello"),
        (b"connection", b"close"),
    ]

################################################################
#                  splice
################################################################

@given(integers(1, 100), data(), randoms())
async def test_splice(num_iterations: int, data, rand: random.Random):
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()

    async def spliceit(near, far):
        await splice(near, far)

    async def testit(a, b):
        for i in range(num_iterations):
            a, b = rand.sample((a, b), k=2)

            to_send = data.draw(binary(min_size=1))  # we must send something or receive_some will block
            await a.send_all(to_send)
            received = await b.receive_some(len(to_send))

            assert to_send == received

        a, b = rand.sample((a, b), k=2)
        await a.aclose()  # kill one end, the rest should take care of itself


    async with trio.open_nursery() as nursery:
        nursery.start_soon(spliceit, near, far)
        nursery.start_soon(testit, client, server)


async def test_splice_gives_up_when_idle(autojump_clock) -> None:
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()

    start = trio.current_time()
    await splice(near, far, idle_timeout=30)
    assert trio.current_time() - start == pytest.approx(30)

    # Both ends were closed.
    assert await client.receive_some(10) == b""
    assert await server.receive_some(10) == b""


async def test_splice_keeps_one_way_transfer_alive(autojump_clock) -> None:
    client, near = trio.testing.memory_stream_pair()
    far, server = trio.testing.memory_stream_pair()
    received = b""

    async def trickle() -> None:
        # One byte a second for 20s, while the client says nothing.
        for _ in range(20):
            await trio.sleep(1)
            await server.send_all(b"x")
        await server.aclose()

    async def drain() -> None:
        nonlocal received
        while True:
            chunk = await client.receive_some(100)
            if not chunk:
                break
            received += chunk

    async with trio.open_nursery() as nursery:
        nursery.start_soon(partial(splice, near, far, idle_timeout=5))
        nursery.start_soon(trickle)
        nursery.start_soon(drain)

    assert received == b"x" * 20

################################################################
#                  Synchronous wrapper
################################################################

# Thread scheduling varies, so we cannot reliably (nor quickly) test
# if SynchronousForwardProxy cancellation works, i.e. that:
#
#     1. the proxy _will_ be cancelled
#     2. it will happen in no more than `stop_check_interval` seconds
#
# However, by putting the cancellation logic in a separate function,
# we can get most of the way there.

@settings(suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=timedelta(seconds=1))
@given(stop_check_interval=floats(0.001, 10.000))
async def test_cancellation_seen_promptly(stop_check_interval: float, autojump_clock):

    p = ForwardProxy(CONFIG._replace(listen_host="localhost", port=Port(12349)))  # hopefully available
    stop = threading.Event()

    proxy_cancelled = False

    async def runner() -> None:
        nonlocal proxy_cancelled
        await run_synchronously_cancellable_proxy(p, stop, stop_check_interval)
        proxy_cancelled = True

    async def killer() -> None:
        await trio.to_thread.run_sync(stop.set)  # from another thread, as in SynchronousForwardProxy
        assert stop.is_set(), "This should always be the case, as it's a threading.Event"
        await trio.sleep(1.001 * stop_check_interval)
        assert proxy_cancelled, "After `stop_check_interval`, the proxy should have been cancelled"

    async with trio.open_nursery() as nursery:
        nursery.start_soon(runner)
        nursery.start_soon(killer)

# Tests for the main handler follow.
#
# Summary of tests for handle()
# =============================
# Any request without the right Proxy-Authorization:
#   407, and the upstream never hears about it
#
# Request for a host not on the allow-list:
#   403, and the upstream never hears about it
#
# Request for an allowed host:
#   plain HTTP: the upstream's response, minus hop-by-hop headers
#   CONNECT: exactly "200 Connection Established", then a byte pipe
#
# Upstream down, unreachable in time, or silent before the response head:
#   502, then the client connection is closed
#
# Upstream breaks off after the response head:
#   the client connection is closed
#
# Client hangs up mid-response:
#   the upstream connection is closed
#
# Keep-alive: every request on the connection is checked on its own
#
# Anything else should fail with a 4xx error
#   client timeouts: 408 (Too Slow)
#   malformed request is 400 (Bad Request)
#
#
# But first, some helpers.


################################################################
#            Generating valid domains and ports
################################################################
def new_label(length: int, rand: random.Random) -> str:
    """
    Return a "label" element according to RFC 1035, of specified length (>0).
    """
    if length <= 0:
        raise ValueError("There are no valid zero- or negative-length labels")
    letter = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
    letter_digit = letter + "0123456789"
    letter_digit_hyphen = letter_digit + "-"

    if length == 1:
        label = rand.choice(letter)
    else:
        label = (rand.choice(letter)
            + "".join(rand.choice(letter_digit_hyphen) for _ in range(length - 2))
            + rand.choice(letter_digit)
        )
    return label

def new_domain(chunk_lengths: List[int], rand: random.Random) -> Domain:
    """
    Return a valid domain according to RFC 1035.

    `chunk_lengths` must be a non-empty list of positive integers.
    """
    if not chunk_lengths or any(l <= 0 for l in chunk_lengths):
        raise ValueError()

    return Domain(".".join(new_label(l, rand) for l in chunk_lengths))

def domains():
    return builds(new_domain, lists(integers(1, 10), min_size=1, max_size=10), randoms())

@given(domains())
def test_domains(d: Domain) -> None:
    pass # We're testing example generation here.

################################################################
#                     Fake DNS resolution
################################################################

class ResolveAllToLocalhost(trio.abc.HostnameResolver):
    """A fake resolver, which resolves all hostnames to 127.0.0.1."""

    async def getaddrinfo(self, host, port, family=0, type=0, proto=0, flags=0):
        # Synchronous, but should always return promptly.
        return socket.getaddrinfo("127.0.0.1", port, family, type, proto, flags)

    async def getnameinfo(self, sockaddr, flags):
        return socket.getnameinfo(sockaddr, flags)


class NeverResolve(trio.abc.HostnameResolver):
    """A fake resolver which never answers, so every connection attempt times out."""

    async def getaddrinfo(self, host, port, family=0, type=0, proto=0, flags=0):
        await trio.sleep_forever()

    async def getnameinfo(self, sockaddr, flags):
        await trio.sleep_forever()


def with_resolver(resolver: trio.abc.HostnameResolver) -> Callable[[Callable], Callable]:
    """Decorates an async function to run with `resolver` as the resolver."""
    def decorate(f: Callable) -> Callable:
        @wraps(f)  # preserves function signature
        async def wrapper(*args, **kwargs):
            original_resolver = trio.socket.set_custom_hostname_resolver(resolver)
            try:
                return (await f(*args, **kwargs))
            finally:
                trio.socket.set_custom_hostname_resolver(original_resolver)
        return wrapper
    return decorate

resolve_all_to_localhost = with_resolver(ResolveAllToLocalhost())
never_resolve = with_resolver(NeverResolve())

################################################################
#                     Stub upstreams
################################################################

async def open_listener() -> Tuple[trio.SocketListener, int]:
    listeners = await trio.open_tcp_listeners(0, host="127.0.0.1")
    return listeners[0], listeners[0].socket.getsockname()[1]


def unused_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class HTTPUpstream:
    """Answers every request with the same response, and remembers what it was asked."""

    def __init__(self, status: int = 200, headers: List[Tuple[str, str]] = [], body: bytes = b""):
        self.status = status
        self.headers = headers
        self.body = body
        self.connections = 0
        self.requests: List[Tuple[h11.Request, bytes]] = []

    async def serve(self, listener: trio.SocketListener, task_status=trio.TASK_STATUS_IGNORED) -> None:
        async with listener:
            task_status.started()
            while True:
                stream = await listener.accept()
                self.connections += 1
                async with stream:
                    await self.answer(TrioHTTPConnection(stream))

    async def answer(self, conn: TrioHTTPConnection) -> None:
        request = await conn.next_event()
        body = b""
        while True:
            event = await conn.next_event()
            if isinstance(event, h11.Data):
                body += event.data
            elif isinstance(event, h11.EndOfMessage):
                break
        self.requests.append((request, body))

        await conn.send(h11.Response(status_code=self.status, headers=self.headers))
        # In several pieces, to exercise streaming.
        for i in range(0, len(self.body), 4096):
            await conn.send(h11.Data(data=self.body[i:i + 4096]))
        await conn.send(h11.EndOfMessage())


class EchoUpstream:
    """Echoes one TCP connection back at itself, and notes when it ends."""

    def __init__(self):
        self.received = b""
        self.closed = trio.Event()

    async def serve(self, listener: trio.SocketListener, task_status=trio.TASK_STATUS_IGNORED) -> None:
        async with listener:
            task_status.started()
            stream = await listener.accept()
            async with stream:
                while True:
                    try:
                        chunk = await stream.receive_some(65536)
                    except trio.BrokenResourceError:
                        break
                    if not chunk:
                        break
                    self.received += chunk
                    await stream.send_all(chunk)
            self.closed.set()


class ScriptedUpstream:
    """Reads one request, then hands the connection over to `script`."""

    def __init__(self, script: Callable):
        self.script = script
        self.requests: List[h11.Request] = []
        self.closed = trio.Event()

    async def serve(self, listener: trio.SocketListener, task_status=trio.TASK_STATUS_IGNORED) -> None:
        async with listener:
            task_status.started()
            stream = await listener.accept()
            async with stream:
                conn = TrioHTTPConnection(stream)
                request = await conn.next_event()
                while type(await conn.next_event()) is not h11.EndOfMessage:
                    pass
                self.requests.append(request)
                await self.script(conn)
            self.closed.set()


async def never_answer(conn: TrioHTTPConnection) -> None:
    await trio.sleep_forever()


async def break_off_mid_body(conn: TrioHTTPConnection) -> None:
    await conn.stream.send_all(b"HTTP/1.1 200 OK\r\nContent-Length: 100\r\n\r\nabc")


async def stream_until_closed(conn: TrioHTTPConnection) -> None:
    await conn.send(h11.Response(status_code=200, headers=[]))
    await conn.send(h11.Data(data=b"first"))
    try:
        while await conn.stream.receive_some(1024):
            pass
    except trio.BrokenResourceError:
        pass

################################################################
#                  "HTTP client" functions
################################################################

async def http_exchange(
        stream: trio.abc.Stream,
        req: h11.Request,
        body: bytes = b"",
        conn: Optional[h11.Connection] = None,
    ) -> Tuple[h11.Response, bytes]:
    """
    Send one request, return the response and its body.

    Pass the same `conn` to send several requests over one connection.
    """
    if conn is None:
        conn = h11.Connection(h11.CLIENT)
    elif conn.our_state is h11.DONE:
        conn.start_next_cycle()
    to_send = conn.send(req)
    if body:
        to_send += conn.send(h11.Data(data=body))
    to_send += conn.send(h11.EndOfMessage())
    await stream.send_all(to_send)

    response = None
    received = b""
    while True:
        event = conn.next_event()
        if event is h11.NEED_DATA:
            conn.receive_data(await stream.receive_some(65536))
        elif isinstance(event, h11.Response):
            response = event
        elif isinstance(event, h11.Data):
            received += event.data
        elif isinstance(event, h11.EndOfMessage):
            return response, received


async def receive_exactly(stream: trio.abc.Stream, n: int) -> bytes:
    received = b""
    while len(received) < n:
        chunk = await stream.receive_some(n - len(received))
        if not chunk:
            break
        received += chunk
    return received


async def receive_until_eof(stream: trio.abc.Stream) -> bytes:
    received = b""
    with trio.fail_after(10):
        while True:
            chunk = await stream.receive_some(65536)
            if not chunk:
                return received
            received += chunk


def connect_request(destination: str, auth: Optional[str] = GOOD_AUTH, http_version: str = "1.1") -> bytes:
    head = f"CONNECT {destination} HTTP/{http_version}\r\nHost: {destination}\r\n"
    if auth is not None:
        head += f"Proxy-Authorization: {auth}\r\n"
    return (head + "\r\n").encode()


async def run_proxy(config: Configuration, client: Callable, upstream: Optional[Callable] = None):
    """
    Runs handle() against `client`, which gets the other end of an
    in-memory connection. `upstream`, if given, is started first and
    cancelled once both are done.
    """
    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        if upstream is not None:
            await nursery.start(upstream)
        async with trio.open_nursery() as inner:
            inner.start_soon(handle, proxy_stream, config)
            inner.start_soon(client, client_stream)
        nursery.cancel_scope.cancel()

################################################################
#               Actual tests for handle(): plain HTTP
################################################################

@resolve_all_to_localhost
async def test_relay_round_trip() -> None:
    # alice/secret123 may fetch http://api.example.com/data
    upstream = HTTPUpstream(200, headers=[
        ("Content-Type", "application/json"),
        ("Content-Length", "11"),
        ("Keep-Alive", "timeout=5"),
        ("X-Upstream", "yes"),
    ], body=b'{"ok":true}')
    listener, port = await open_listener()
    result = {}

    async def client(stream):
        async with stream:
            result["response"], result["body"] = await http_exchange(stream, request(
                f"http://api.example.com:{port}/data?q=1",
                [("Host", f"api.example.com:{port}"),
                 ("Proxy-Authorization", GOOD_AUTH),
                 ("Proxy-Connection", "keep-alive"),
                 ("X-Client", "hello")],
            ))

    await run_proxy(CONFIG, client, partial(upstream.serve, listener))

    response = result["response"]
    assert response.status_code == 200
    assert result["body"] == b'{"ok":true}'
    headers = dict(response.headers)
    assert headers[b"content-type"] == b"application/json"
    assert headers[b"x-upstream"] == b"yes"
    assert b"keep-alive" not in headers

    assert upstream.connections == 1
    forwarded, body = upstream.requests[0]
    assert forwarded.method == b"GET"
    assert forwarded.target == b"/data?q=1"
    forwarded_headers = dict(forwarded.headers)
    assert forwarded_headers[b"x-client"] == b"hello"
    assert forwarded_headers[b"host"] == f"api.example.com:{port}".encode()
    assert b"proxy-authorization" not in forwarded_headers
    assert b"proxy-connection" not in forwarded_headers


@resolve_all_to_localhost
async def test_relay_streams_bodies_both_ways() -> None:
    big = bytes(range(256)) * 400  # no Content-Length, so upstream sends it chunked
    upstream = HTTPUpstream(201, body=big)
    listener, port = await open_listener()
    result = {}

    async def client(stream):
        async with stream:
            result["response"], result["body"] = await http_exchange(stream, h11.Request(
                method="POST",
                target="/upload",
                headers=[("Host", f"api.example.com:{port}"),
                         ("Proxy-Authorization", GOOD_AUTH),
                         ("Content-Length", "7")],
            ), body=b"payload")

    await run_proxy(CONFIG, client, partial(upstream.serve, listener))

    assert result["response"].status_code == 201
    assert result["body"] == big
    forwarded, body = upstream.requests[0]
    assert forwarded.method == b"POST"
    assert body == b"payload"


@given(domain=domains())
@resolve_all_to_localhost
async def test_empty_allow_list_relays_to_any_host(domain: Domain) -> None:
    upstream = HTTPUpstream(204)
    listener, port = await open_listener()
    result = {}

    async def client(stream):
        async with stream:
            result["response"], _ = await http_exchange(stream, request(
                f"http://{domain}:{port}/", [("Host", domain), ("Proxy-Authorization", GOOD_AUTH)]
            ))

    await run_proxy(OPEN_CONFIG, client, partial(upstream.serve, listener))
    assert result["response"].status_code == 204
    assert upstream.connections == 1


@given(auth=one_of(none(), printable, builds(basic, printable, printable)))
@resolve_all_to_localhost
async def test_relay_without_valid_credentials(auth: Optional[str]) -> None:
    assume(auth != GOOD_AUTH)
    upstream = HTTPUpstream(200)
    listener, port = await open_listener()
    result = {}

    headers = [("Host", "api.example.com")]
    if auth is not None:
        headers.append(("Proxy-Authorization", auth))

    async def client(stream):
        async with stream:
            result["response"], _ = await http_exchange(stream, request(f"http://api.example.com:{port}/", headers))

    await run_proxy(CONFIG, client, partial(upstream.serve, listener))
    response = result["response"]
    assert response.status_code == 407
    assert dict(response.headers)[b"proxy-authenticate"] == b'Basic realm="Proxy"'
    assert upstream.connections == 0


@resolve_all_to_localhost
async def test_relay_to_host_not_on_allow_list() -> None:
    upstream = HTTPUpstream(200)
    listener, port = await open_listener()
    result = {}

    async def client(stream):
        async with stream:
            result["response"], _ = await http_exchange(stream, request(
                f"http://evil.com:{port}/", [("Host", "evil.com"), ("Proxy-Authorization", GOOD_AUTH)]
            ))

    await run_proxy(CONFIG, client, partial(upstream.serve, listener))
    assert result["response"].status_code == 403
    assert upstream.connections == 0


async def test_relay_without_host() -> None:
    result = {}

    async def client(stream):
        async with stream:
            result["response"], _ = await http_exchange(
                stream, request("/data", [("Proxy-Authorization", GOOD_AUTH)], http_version="1.0")
            )

    await run_proxy(CONFIG, client)
    assert result["response"].status_code == 400


@resolve_all_to_localhost
async def test_relay_to_unreachable_upstream() -> None:
    port = unused_port()
    result = {}

    async def client(stream):
        async with stream:
            result["response"], _ = await http_exchange(stream, request(
                f"http://api.example.com:{port}/", [("Host", "api.example.com"), ("Proxy-Authorization", GOOD_AUTH)]
            ))
            assert await receive_until_eof(stream) == b""

    await run_proxy(CONFIG, client)
    assert result["response"].status_code == 502
    assert result["response"].reason == b"Bad Gateway"


@never_resolve
async def test_relay_upstream_connect_timeout(autojump_clock) -> None:
    result = {}

    async def client(stream):
        async with stream:
            result["response"], _ = await http_exchange(stream, request(
                "http://api.example.com/", [("Host", "api.example.com"), ("Proxy-Authorization", GOOD_AUTH)]
            ))

    await run_proxy(CONFIG, client)
    assert result["response"].status_code == 502


@resolve_all_to_localhost
async def test_relay_upstream_silent_before_response() -> None:
    upstream = ScriptedUpstream(never_answer)
    listener, port = await open_listener()
    result = {}

    async def client(stream):
        async with stream:
            result["response"], _ = await http_exchange(stream, request(
                f"http://api.example.com:{port}/", [("Host", "api.example.com"), ("Proxy-Authorization", GOOD_AUTH)]
            ))

    await run_proxy(CONFIG._replace(idle_timeout=0.5), client, partial(upstream.serve, listener))
    assert result["response"].status_code == 502
    assert len(upstream.requests) == 1


@resolve_all_to_localhost
async def test_relay_upstream_breaks_after_response_head() -> None:
    upstream = ScriptedUpstream(break_off_mid_body)
    listener, port = await open_listener()

    async def client(stream):
        async with stream:
            conn = h11.Connection(h11.CLIENT)
            await stream.send_all(conn.send(request(
                f"http://api.example.com:{port}/", [("Host", "api.example.com"), ("Proxy-Authorization", GOOD_AUTH)]
            )) + conn.send(h11.EndOfMessage()))
            # No 502 can follow a 200, so the client just sees the connection end.
            response = await receive_until_eof(stream)
            assert response.startswith(b"HTTP/1.1 200 ")
            assert response.endswith(b"abc")

    await run_proxy(CONFIG, client, partial(upstream.serve, listener))


@resolve_all_to_localhost
async def test_client_hangup_closes_upstream() -> None:
    upstream = ScriptedUpstream(stream_until_closed)
    listener, port = await open_listener()

    async def client(stream):
        conn = h11.Connection(h11.CLIENT)
        await stream.send_all(conn.send(request(
            f"http://api.example.com:{port}/", [("Host", "api.example.com"), ("Proxy-Authorization", GOOD_AUTH)]
        )) + conn.send(h11.EndOfMessage()))

        received = b""
        with trio.fail_after(3):
            while b"first" not in received:
                received += await stream.receive_some(65536)
        await stream.aclose()

        # The upstream is still sending, so only the proxy can end this.
        with trio.fail_after(3):
            await upstream.closed.wait()

    await run_proxy(CONFIG._replace(idle_timeout=30), client, partial(upstream.serve, listener))


@resolve_all_to_localhost
async def test_keep_alive_checks_every_request() -> None:
    upstream = HTTPUpstream(200, headers=[("Content-Length", "2")], body=b"ok")
    listener, port = await open_listener()
    statuses = []

    async def client(stream):
        async with stream:
            conn = h11.Connection(h11.CLIENT)
            target = f"http://api.example.com:{port}/"
            for auth in [GOOD_AUTH, GOOD_AUTH, None]:
                headers = [("Host", "api.example.com")]
                if auth is not None:
                    headers.append(("Proxy-Authorization", auth))
                response, _ = await http_exchange(stream, request(target, headers), conn=conn)
                statuses.append(response.status_code)

    await run_proxy(CONFIG, client, partial(upstream.serve, listener))
    assert statuses == [200, 200, 407]
    assert upstream.connections == 2

################################################################
#               Actual tests for handle(): CONNECT
################################################################

@given(payloads=lists(binary(min_size=1, max_size=5000), max_size=10), early=binary(max_size=100))
@resolve_all_to_localhost
async def test_tunnel_is_a_byte_pipe(payloads: List[bytes], early: bytes) -> None:
    upstream = EchoUpstream()
    listener, port = await open_listener()

    async def client(stream):
        async with stream:
            # Bytes sent along with the request head belong to the tunnel.
            await stream.send_all(connect_request(f"api.example.com:{port}") + early)
            assert await receive_exactly(stream, len(ESTABLISHED) + len(early)) == ESTABLISHED + early

            for payload in payloads:
                await stream.send_all(payload)
                assert await receive_exactly(stream, len(payload)) == payload

    await run_proxy(CONFIG, client, partial(upstream.serve, listener))
    assert upstream.received == early + b"".join(payloads)


@resolve_all_to_localhost
async def test_closing_client_closes_upstream() -> None:
    upstream = EchoUpstream()
    listener, port = await open_listener()

    async def client(stream):
        await stream.send_all(connect_request(f"api.example.com:{port}"))
        assert await receive_exactly(stream, len(ESTABLISHED)) == ESTABLISHED
        await stream.send_all(b"ping")
        assert await receive_exactly(stream, 4) == b"ping"
        await stream.aclose()

        with trio.fail_after(1):
            await upstream.closed.wait()

    await run_proxy(CONFIG, client, partial(upstream.serve, listener))


@given(auth=one_of(none(), printable, builds(basic, printable, printable)))
async def test_tunnel_without_valid_credentials(auth: Optional[str]) -> None:
    assume(auth != GOOD_AUTH)

    async def client(stream):
        async with stream:
            await stream.send_all(connect_request("api.example.com:443", auth))
            response = await receive_until_eof(stream)
            assert response.startswith(b"HTTP/1.1 407 Proxy Authentication Required\r\n")
            assert b'proxy-authenticate: basic realm="proxy"' in response.lower()

    await run_proxy(CONFIG, client)


@resolve_all_to_localhost
async def test_tunnel_to_host_not_on_allow_list() -> None:
    upstream = EchoUpstream()
    listener, port = await open_listener()

    async def client(stream):
        async with stream:
            await stream.send_all(connect_request(f"evil.com:{port}"))
            response = await receive_until_eof(stream)
            assert response.startswith(b"HTTP/1.1 403 Forbidden\r\n")

    await run_proxy(CONFIG, client, partial(upstream.serve, listener))
    assert upstream.received == b""
    assert not upstream.closed.is_set()


@resolve_all_to_localhost
async def test_tunnel_to_unreachable_upstream() -> None:
    port = unused_port()

    async def client(stream):
        async with stream:
            await stream.send_all(connect_request(f"api.example.com:{port}"))
            # The connection is closed after the status line.
            response = await receive_until_eof(stream)
            assert response.startswith(b"HTTP/1.1 502 Bad Gateway\r\n")

    await run_proxy(CONFIG, client)


async def test_tunnel_with_bad_port() -> None:
    async def client(stream):
        async with stream:
            await stream.send_all(connect_request("api.example.com:123456"))
            response = await receive_until_eof(stream)
            assert response.startswith(b"HTTP/1.1 400 Bad Request\r\n")

    await run_proxy(CONFIG, client)


@resolve_all_to_localhost
async def test_tunnel_for_http_1_0_client() -> None:
    upstream = EchoUpstream()
    listener, port = await open_listener()

    async def client(stream):
        async with stream:
            await stream.send_all(connect_request(f"api.example.com:{port}", http_version="1.0"))
            assert await receive_exactly(stream, len(ESTABLISHED)) == ESTABLISHED
            await stream.send_all(b"ping")
            assert await receive_exactly(stream, 4) == b"ping"

    await run_proxy(CONFIG, client, partial(upstream.serve, listener))


@never_resolve
async def test_tunnel_upstream_connect_timeout(autojump_clock) -> None:
    async def client(stream):
        async with stream:
            await stream.send_all(connect_request("api.example.com:443"))
            response = await receive_until_eof(stream)
            assert response.startswith(b"HTTP/1.1 502 Bad Gateway\r\n")

    await run_proxy(CONFIG, client)

################################################################
#               Actual tests for handle(): bad clients
################################################################

async def connect_slowly(stream: trio.abc.Stream, expected: bytes) -> None:
    """Sends a CONNECT request, very slowly."""
    async with stream:
        await trio.sleep(10)
        try:
            # This will blow up if the server already closed the connection.
            await stream.send_all(connect_request("api.example.com:443"))
        except trio.BrokenResourceError:
            pass
        resp = await stream.receive_some(10000)
        assert resp.startswith(expected)


async def test_client_times_out(autojump_clock) -> None:
    # Anything else should fail with a 4xx error
    #   client timeouts: 408 (Too Slow)
    client_stream, proxy_stream = trio.testing.memory_stream_pair()
    async with trio.open_nursery() as nursery:
        nursery.start_soon(connect_slowly, client_stream, b"HTTP/1.1 408")
        nursery.start_soon(handle, proxy_stream, CONFIG)


@given(rand=randoms())
async def test_random_input(rand: random.Random) -> None:

    expected = b"HTTP/1.1 400"

    #   malformed request: 400 (Bad Request)
    random_length = rand.randint(0, 100)
    random_bytes = bytes(rand.getrandbits(8) for _ in range(random_length))
    random_bytes += b"\r\n\r\n"  # we must terminate the line, or the server will time out

    async def client(stream):
        async with stream:
            await stream.send_all(random_bytes)
            resp = await stream.receive_some(10000)
            assert resp.startswith(expected)

    await run_proxy(CONFIG, client)
