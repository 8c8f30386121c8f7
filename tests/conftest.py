import base64
import os
import sys
from urllib.parse import parse_qs

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


class FakeClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class FakeRpc:
    """
    In-memory platform RPC endpoint behind httpx.MockTransport.

    Register handlers with `on(service, method, fn)`; `fn(request_message)`
    returns a response message, a `(message, eresult)` tuple, or an
    httpx.Response. Every decoded call is appended to `calls`.
    """

    def __init__(self) -> None:
        self.routes = {}
        self.calls = []

    def on(self, service, method, fn):
        self.routes[(service, method)] = fn

    def count(self, service, method):
        return sum(1 for c in self.calls if (c[0], c[1]) == (service, method))

    def handler(self, request):
        import httpx
        from common.protobufs import MESSAGE_CLASSES, method_spec

        _, svc, method, _ = request.url.path.split("/")
        service = svc[1:-len("Service")]
        spec = method_spec(service, method)
        if request.method == "GET":
            raw = request.url.params["input_protobuf_encoded"]
        else:
            raw = parse_qs(request.content.decode("ascii"), keep_blank_values=True)["input_protobuf_encoded"][0]
        msg = MESSAGE_CLASSES[spec.request].FromString(base64.b64decode(raw))
        self.calls.append((service, method, msg, request))

        fn = self.routes.get((service, method))
        if fn is None:
            return httpx.Response(404)
        out = fn(msg)
        if isinstance(out, httpx.Response):
            return out
        eresult = 1
        if isinstance(out, tuple):
            out, eresult = out
        if out is None:
            out = MESSAGE_CLASSES[spec.response]()
        return httpx.Response(200, content=out.SerializeToString(), headers={"x-eresult": str(eresult)})

    def transport(self):
        import httpx
        from common.transport import RetryPolicy, RpcTransport

        client = httpx.Client(transport=httpx.MockTransport(self.handler))
        return RpcTransport(client=client, policy=RetryPolicy(max_attempts=2), sleep=lambda s: None)


@pytest.fixture
def fake_clock():
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def fake_rpc():
    return FakeRpc()


@pytest.fixture
def fast_kdf():
    from state.codec import KdfSettings

    # Minimum Argon2id cost keeps the suite fast
    return KdfSettings(memory=8, iterations=1, parallelism=1)
