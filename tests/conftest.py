import pytest

from edge_static_site.origin import AccessGate, InMemoryOrigin

EDGE_IDENTITY = "edge"


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingFetch:
    """Wraps an origin, remembering every path it was asked for."""

    def __init__(self, origin):
        self.origin = origin
        self.paths = []

    def get(self, path):
        self.paths.append(path)
        return self.origin.get(path)

    __call__ = get


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate():
    return AccessGate(EDGE_IDENTITY)


@pytest.fixture
def site_objects():
    return {
        "index.html": "home",
        "docs/index.html": "docs home",
        "app.js": "console.log('hi')",
        "a.b/c/index.html": "dotted parent",
        "404.html": "not found page",
    }


@pytest.fixture
def origin(site_objects, gate):
    return InMemoryOrigin(site_objects, gate, EDGE_IDENTITY)


@pytest.fixture
def fetch(origin):
    return RecordingFetch(origin)
