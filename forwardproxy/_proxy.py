import trio, h11, threading, logging
from functools import partial

from ._adapter import TrioHTTPConnection
from ._config import Configuration
from ._relay import relay_request
from ._tunnel import establish_tunnel

logger = logging.getLogger(__name__)

################################################################
#                  The proxy itself
################################################################

async def handle(stream: trio.abc.Stream, config: Configuration) -> None:
    """
    Handles one client connection from start to end.

    CONNECT requests become tunnels, which consume the rest of the
    connection. Any other request is relayed upstream; the connection
    may then carry further requests, each checked on its own.
    """
    start_time = trio.current_time()
    w = TrioHTTPConnection(stream, shutdown_timeout=10, read_timeout=config.idle_timeout)

    try:
        while True:
            assert w.conn.states == {h11.CLIENT: h11.IDLE, h11.SERVER: h11.IDLE}

            with trio.fail_after(config.request_timeout):
                # Regular event sequence:
                # -----------------------
                #   1. Request (= start of request)
                #   2. Data* (optional)
                #   3. EndOfMessage (= end of request)
                #
                # At any moment: ConnectionClosed or exception
                e = await w.next_event()
                assert isinstance(e, (h11.Request, h11.ConnectionClosed)), "This assertion should always hold"

                if isinstance(e, h11.ConnectionClosed):
                    w.info("Client closed the TCP connection")
                    break

                if e.method == b"CONNECT":
                    # Ignore any HTTP body (h11.Data entries)
                    # and read until h11.EndOfMessage
                    while type(await w.next_event()) is not h11.EndOfMessage:
                        pass

            if e.method == b"CONNECT":
                await establish_tunnel(w, e, config)
                break

            await relay_request(w, e, config)

            if w.conn.our_state is h11.DONE and w.conn.their_state is h11.DONE:
                w.conn.start_next_cycle()
            else:
                break

        await w.ensure_shutdown()

    except Exception as e:
        w.info(f"Handling exception: {e!r}")
        try:
            if isinstance(e, trio.BrokenResourceError):
                w.info("Client abruptly closed connection; dropping request.")
            elif isinstance(e, h11.RemoteProtocolError):
                await w.send_error(e.error_status_hint, str(e))
            elif isinstance(e, trio.TooSlowError):
                await w.send_error(408, "Client is too slow, terminating connection")
            else:
                logger.exception("Internal Server Error")
                await w.send_error(500, "Internal Server Error")
            await w.ensure_shutdown()
        except Exception as e:
            w.info(f"Error while responding to a failed request: {e!r}")
            await w.stream.aclose()
    finally:
        end_time = trio.current_time()
        w.info(f"Total time: {end_time - start_time:.6f}s")


################################################################
#                  User-friendly objects
################################################################

class ForwardProxy:
    """
    An authenticating HTTP forward proxy, with an optional destination
    allow-list.

    Runs on a trio event loop.
    """

    def __init__(self, config: Configuration):
        self.config = config

    async def listen(self, task_status=trio.TASK_STATUS_IGNORED) -> None:
        """
        Listen for incoming TCP connections on the configured host and port.

        Can be started with `nursery.start`, in which case the listeners
        are handed back once they are bound.
        """
        host, port = self.config.listen_host, self.config.port
        logger.info(f"Listening on http://{host}:{port}")
        h = partial(handle, config=self.config)
        await trio.serve_tcp(h, port, host=host, task_status=task_status)


async def run_synchronously_cancellable_proxy(
        proxy: ForwardProxy,
        stop: threading.Event,
        stop_check_interval: float,
    ) -> None:
    """
    Runs the proxy, until cancelled through the `stop` event.
    It checks the event every `stop_check_interval` seconds.

    This function is meant for use primarily in the synchronous world:
    while it _can_ be used just fine in Trio, a plain trio.CancelScope
    is simpler and more idiomatic.
    """

    async def listen_for_stop(cancel_scope: trio.CancelScope) -> None:
        while not stop.is_set():
            await trio.sleep(stop_check_interval)
        cancel_scope.cancel()

    async with trio.open_nursery() as nursery:
        nursery.start_soon(listen_for_stop, nursery.cancel_scope)
        nursery.start_soon(proxy.listen)


class SynchronousForwardProxy:
    """
    A wrapper around ForwardProxy which runs it in a separate
    thread, so you can use it from a traditional threaded program.

    Can stop, but not gently. (It kills all TCP connections.)
    """

    def __init__(self, config: Configuration, stop_check_interval: float = 0.010):
        """
        `stop_check_interval` is how long (in seconds) it may take to stop the proxy.
        """
        self._proxy = ForwardProxy(config)
        self._started = False
        self._stop = threading.Event()

        self._thread = threading.Thread(
            name=f"SynchronousForwardProxy-on-http://{config.listen_host}:{config.port}/",
            target=trio.run,
            args=(run_synchronously_cancellable_proxy, self._proxy, self._stop, stop_check_interval),
        )

    def start(self) -> None:
        """Start the proxy, if not already started."""
        if not self._started:
            self._thread.start()
            self._started = True

    def stop(self) -> None:
        """Stop the proxy, if not already stopped."""
        self._stop.set()
        if self._started:
            self._thread.join()
