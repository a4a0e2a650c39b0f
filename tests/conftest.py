import json

import pytest

from yaraify_scanner.client import YaraifyClient, YaraifyConfig


class FakeTransport:
    """Records every request and replays queued responses in order.

    A queued exception instance is raised instead of returned.
    """

    def __init__(self):
        self.responses = []
        self.posts = []
        self.multipart = []
        self.gets = []

    def queue(self, *responses):
        for response in responses:
            if isinstance(response, dict):
                response = json.dumps(response).encode("utf-8")
            self.responses.append(response)

    def _next(self):
        if not self.responses:
            raise AssertionError("no response queued")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def post(self, body):
        self.posts.append(json.loads(body))
        return self._next()

    def post_multipart(self, fields, file_path):
        self.multipart.append((dict(fields), file_path))
        return self._next()

    def get(self, url):
        self.gets.append(url)
        return self._next()

    @property
    def queries(self):
        return [p.get("query") for p in self.posts]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config():
    return YaraifyConfig(api_key="test-key")


@pytest.fixture
def client(config, transport):
    return YaraifyClient(config, transport=transport)


def ok(data=None, status="ok", **extra):
    envelope = {"query_status": status}
    if data is not None:
        envelope["data"] = data
    envelope.update(extra)
    return envelope


def metadata_obj(sha256="a" * 64, **overrides):
    obj = {
        "file_name": "sample.exe",
        "file_size": 1024,
        "file_type_mime": "application/x-dosexec",
        "first_seen": "2022-07-01 10:00:00",
        "last_seen": "2022-07-02 10:00:00",
        "sightings": 3,
        "sha256_hash": sha256,
        "md5_hash": "b" * 32,
        "sha1_hash": "c" * 40,
        "sha3_384": "d" * 96,
        "imphash": "e" * 32,
    }
    obj.update(overrides)
    return obj
