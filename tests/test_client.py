import hashlib
import json

import pytest
import requests

from yaraify_scanner.batch import ErrorPolicy
from yaraify_scanner.client import (
    ENV_API_KEY,
    ENV_MALPEDIA_TOKEN,
    YARAIFY_RULES_URL,
    QueryBuilder,
    YaraifyClient,
    YaraifyConfig,
    YaraifyTransport,
    analyze_file,
    load_config,
    save_config,
)
from yaraify_scanner.errors import (
    ArchiveError,
    DecodeError,
    InputValidationError,
    MemberNotFoundError,
    QueryStatusError,
)
from yaraify_scanner.models import IdentifierFilter

from conftest import metadata_obj, ok
from create_test_files import EICAR, build_encrypted_archive, build_plain_archive


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------

BUILDER_CASES = [
    ("build_generate_identifier", (), ["query"]),
    ("build_list_tasks", ("id",), ["query", "identifier"]),
    ("build_list_tasks", ("id", IdentifierFilter.PROCESSED), ["query", "identifier", "task_status"]),
    ("build_upload", ("id",), ["identifier", "clamav_scan", "unpack", "share_file", "skip_known", "skip_noisy"]),
    ("build_get_results", ("t",), ["query", "task_id", "malpedia-token"]),
    ("build_lookup_hash", ("h",), ["query", "search_term", "malpedia-token"]),
    ("build_search", ("get_tlsh", "T1", 50), ["query", "search_term", "result_max"]),
    ("build_get_file", ("s",), ["query", "sha256_hash"]),
    ("build_get_unpacked", ("s",), ["query", "sha256_hash"]),
    ("build_get_yara_rule", ("u",), ["query", "uuid"]),
    ("build_recent_yararules", (), ["query"]),
]


@pytest.mark.parametrize("method,args,keys", BUILDER_CASES)
def test_requests_are_deterministic(method, args, keys):
    builder = QueryBuilder(YaraifyConfig(malpedia_token="tok"))
    first = getattr(builder, method)(*args)
    second = getattr(builder, method)(*args)
    assert list(first) == keys
    assert builder.encode(first) == builder.encode(second)


def test_every_builder_is_covered():
    builders = {name for name in dir(QueryBuilder) if name.startswith("build_")}
    covered = {case[0] for case in BUILDER_CASES}
    assert builders == covered


def test_upload_flags_are_integers(config):
    request = QueryBuilder(config).build_upload(clamav_scan=False, unpack=True, share_file=True)
    assert request == {
        "clamav_scan": 0,
        "unpack": 1,
        "share_file": 1,
        "skip_known": 0,
        "skip_noisy": 1,
    }


@pytest.mark.parametrize("identifier", [None, "", "   "])
def test_upload_omits_blank_identifier(config, identifier):
    assert "identifier" not in QueryBuilder(config).build_upload(identifier=identifier)


def test_search_request_clamps_limit(config):
    builder = QueryBuilder(config)
    assert builder.build_search("get_yara", "R", 5000)["result_max"] == 1000
    assert builder.build_search("get_yara", "R", 0)["result_max"] == 25


def test_malpedia_token_only_on_lookups():
    builder = QueryBuilder(YaraifyConfig(malpedia_token="tok"))
    assert builder.build_get_results("t")["malpedia-token"] == "tok"
    assert builder.build_lookup_hash("h")["malpedia-token"] == "tok"
    assert "malpedia-token" not in builder.build_get_file("h")
    assert "malpedia-token" not in QueryBuilder(YaraifyConfig()).build_get_results("t")


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def test_create_identifier(client, transport):
    transport.queue(ok(identifier="abc123"))
    assert client.create_identifier() == "abc123"
    assert transport.posts == [{"query": "generate_identifier"}]


def test_create_identifier_missing_value(client, transport):
    transport.queue(ok())
    with pytest.raises(DecodeError):
        client.create_identifier()


def test_query_identifier_filters(client, transport):
    transport.queue(ok([]), ok([{"task_id": "t1", "task_status": "queued"}]))
    assert client.query_identifier("id") == []
    results = client.query_identifier("id", IdentifierFilter.QUEUED)
    assert results[0].task_id == "t1"
    assert transport.posts[0] == {"query": "list_tasks", "identifier": "id"}
    assert transport.posts[1]["task_status"] == "queued"


def test_query_identifier_requires_value(client, transport):
    with pytest.raises(InputValidationError):
        client.query_identifier("")
    assert transport.posts == []


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------

def test_scan_file_multipart(client, transport, tmp_path):
    sample = tmp_path / "sample.bin"
    sample.write_bytes(b"MZ" + b"\x00" * 100)
    transport.queue(ok(metadata_obj(mime_type="application/x-dosexec", sha3_384_hash="9" * 96)))

    metadata = client.scan_file(str(sample), identifier="id", unpack=True)

    fields, path = transport.multipart[0]
    assert path == str(sample)
    assert set(fields) == {"json_data"}
    sent = json.loads(fields["json_data"])
    assert sent["identifier"] == "id"
    assert sent["unpack"] == 1
    # config defaults for the flags left unset
    assert sent["clamav_scan"] == 1
    assert sent["skip_noisy"] == 1
    assert metadata.sha256 == "a" * 64


def test_scan_file_queued_status_is_success(client, transport, tmp_path):
    sample = tmp_path / "sample.bin"
    sample.write_bytes(b"data")
    transport.queue(ok({"sha256_hash": "f" * 64}, status="queued"))
    assert client.scan_file(str(sample)).sha256 == "f" * 64


def test_scan_file_validation(client, transport, tmp_path):
    with pytest.raises(InputValidationError):
        client.scan_file(None)
    with pytest.raises(InputValidationError):
        client.scan_file(str(tmp_path / "missing.bin"))
    with pytest.raises(InputValidationError):
        client.scan_file(str(tmp_path))
    assert transport.multipart == []


def test_scan_file_without_data(client, transport, tmp_path):
    sample = tmp_path / "sample.bin"
    sample.write_bytes(b"data")
    transport.queue(ok())
    with pytest.raises(DecodeError):
        client.scan_file(str(sample))


def test_scan_folder_in_sorted_order(client, transport, tmp_path):
    for name in ("b.bin", "a.bin", "c.bin"):
        (tmp_path / name).write_bytes(name.encode())
    (tmp_path / "nested").mkdir()
    transport.queue(
        ok({"sha256_hash": "1"}),
        ok(status="file_size_exceeded"),
        ok({"sha256_hash": "3"}),
    )

    results = client.scan_folder(str(tmp_path))

    sent = [path for _, path in transport.multipart]
    assert sent == [str(tmp_path / n) for n in ("a.bin", "b.bin", "c.bin")]
    assert list(results) == [str(tmp_path / "a.bin"), str(tmp_path / "c.bin")]


def test_scan_files_skips_unreadable_file(client, transport, tmp_path, monkeypatch):
    paths = []
    for name in ("a.bin", "b.bin", "c.bin"):
        (tmp_path / name).write_bytes(name.encode())
        paths.append(str(tmp_path / name))
    real_post = transport.post_multipart

    def post_multipart(fields, file_path):
        if file_path.endswith("b.bin"):
            raise PermissionError(13, "Permission denied", file_path)
        return real_post(fields, file_path)

    monkeypatch.setattr(transport, "post_multipart", post_multipart)
    transport.queue(ok({"sha256_hash": "1"}), ok({"sha256_hash": "3"}))

    results = client.scan_files(paths, policy=ErrorPolicy.CONTINUE)

    assert list(results) == [paths[0], paths[2]]


def test_scan_file_unreadable_raises_validation_error(client, transport, tmp_path, monkeypatch):
    sample = tmp_path / "a.bin"
    sample.write_bytes(b"a")

    def post_multipart(fields, file_path):
        raise PermissionError(13, "Permission denied", file_path)

    monkeypatch.setattr(transport, "post_multipart", post_multipart)
    with pytest.raises(InputValidationError):
        client.scan_file(str(sample))


def test_scan_file_connection_error_passes_through(client, transport, tmp_path):
    sample = tmp_path / "a.bin"
    sample.write_bytes(b"a")
    transport.queue(ConnectionError("reset"))
    with pytest.raises(ConnectionError):
        client.scan_file(str(sample))


def test_scan_empty_folder(client, tmp_path):
    assert client.scan_folder(str(tmp_path)) == {}


def test_scan_folder_missing(client, tmp_path):
    with pytest.raises(InputValidationError):
        client.scan_folder(str(tmp_path / "nope"))


# ---------------------------------------------------------------------------
# Task and hash lookups
# ---------------------------------------------------------------------------

def test_query_task_id(client, transport):
    transport.queue(ok({"metadata": metadata_obj(), "static_results": [{"rule_name": "R"}]}))
    result = client.query_task_id("task-1")
    assert transport.posts[0] == {"query": "get_results", "task_id": "task-1"}
    assert result.tasks[0].task_id == "task-1"
    assert result.tasks[0].all_matches[0].rule_name == "R"


def test_query_task_id_missing_data(client, transport):
    transport.queue(ok())
    with pytest.raises(DecodeError):
        client.query_task_id("task-1")


def test_query_file_hash_error_carries_status(client, transport):
    transport.queue({"query_status": "hash_not_found"})
    with pytest.raises(QueryStatusError) as exc:
        client.query_file_hash("0" * 64)
    assert exc.value.status == "hash_not_found"
    assert transport.posts[0] == {"query": "lookup_hash", "search_term": "0" * 64}


def test_query_file_hashes_continue(client, transport):
    transport.queue(
        ok({"metadata": metadata_obj(sha256="1" * 64), "tasks": []}),
        {"query_status": "illegal_hash"},
        ok({"metadata": metadata_obj(sha256="3" * 64), "tasks": []}),
    )
    results = client.query_file_hashes(["h1", "h2", "h3"])
    assert list(results) == ["h1", "h3"]
    assert results["h3"].metadata.sha256 == "3" * 64


def test_query_file_hashes_abort(client, transport):
    transport.queue(ok({"tasks": []}), {"query_status": "illegal_hash"}, ok({"tasks": []}))
    with pytest.raises(QueryStatusError):
        client.query_file_hashes(["h1", "h2", "h3"], policy=ErrorPolicy.ABORT)
    assert [p["search_term"] for p in transport.posts] == ["h1", "h2"]


def test_connection_error_in_batch_is_skipped(client, transport):
    transport.queue(ConnectionError("reset"), ok({"tasks": []}))
    assert list(client.query_file_hashes(["h1", "h2"])) == ["h2"]


# ---------------------------------------------------------------------------
# Metadata searches
# ---------------------------------------------------------------------------

def test_query_yara_rules_uses_yara_query(client, transport):
    transport.queue(ok([metadata_obj()]), ok(status="no_results"))
    results = client.query_yara_rules(["RuleA", "RuleB"], limit=5000)
    assert transport.queries == ["get_yara", "get_yara"]
    assert all(p["result_max"] == 1000 for p in transport.posts)
    assert len(results["RuleA"]) == 1
    assert results["RuleB"] == []


def test_search_uses_config_limit(transport):
    client = YaraifyClient(YaraifyConfig(result_limit=10), transport=transport)
    transport.queue(ok([]))
    client.query_clamav_rule("Eicar")
    assert transport.posts[0] == {"query": "get_clamav", "search_term": "Eicar", "result_max": 10}


@pytest.mark.parametrize("method,query", [
    ("query_yara_rule", "get_yara"),
    ("query_clamav_rule", "get_clamav"),
    ("query_import_hash", "get_imphash"),
    ("query_tlsh", "get_tlsh"),
    ("query_telfhash", "get_telfhash"),
    ("query_gimphash", "get_gimphash"),
    ("query_icon_dhash", "get_dhash_icon"),
])
def test_search_query_kinds(client, transport, method, query):
    transport.queue(ok([metadata_obj()]))
    results = getattr(client, method)("term", limit=7)
    assert transport.posts[0] == {"query": query, "search_term": "term", "result_max": 7}
    assert results[0].sha256 == "a" * 64


def test_lookup_by_kind(client, transport):
    transport.queue(ok([]), ok([]))
    client.lookup("dhash", "f0f0")
    client.lookup_many("imphash", ["i1"])
    assert transport.queries == ["get_dhash_icon", "get_imphash"]


def test_lookup_unknown_kind(client):
    with pytest.raises(InputValidationError):
        client.lookup("md5", "x")


def test_search_rejects_empty_term(client, transport):
    with pytest.raises(InputValidationError):
        client.query_tlsh("  ")
    assert transport.posts == []


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------

def test_download_sample(client, transport, tmp_path):
    transport.queue(build_encrypted_archive([("eicar.com", EICAR)]))
    target = tmp_path / "spool.zip"
    assert client.download_sample("s" * 64, temp_path=str(target)) == EICAR
    assert transport.posts[0] == {"query": "get_file", "sha256_hash": "s" * 64}
    assert not target.exists()


def test_download_sample_in_memory(client, transport):
    transport.queue(build_encrypted_archive([("eicar.com", EICAR)]))
    assert client.download_sample("s" * 64, in_memory=True) == EICAR


@pytest.mark.parametrize("method,args", [
    ("download_sample", ("s" * 64,)),
    ("download_unpacked_sample", ("s" * 64,)),
    ("download_all_yara_rules", ()),
])
def test_download_rejects_temp_path_with_in_memory(client, transport, tmp_path, method, args):
    with pytest.raises(InputValidationError):
        getattr(client, method)(*args, temp_path=str(tmp_path / "x.zip"), in_memory=True)
    assert transport.posts == []
    assert transport.gets == []


def test_download_error_envelope(client, transport):
    transport.queue({"query_status": "file_not_found"})
    with pytest.raises(QueryStatusError) as exc:
        client.download_sample("s" * 64)
    assert exc.value.status == "file_not_found"


def test_download_empty_archive(client, transport):
    transport.queue(build_plain_archive([]))
    with pytest.raises(MemberNotFoundError):
        client.download_unpacked_sample("s" * 64, in_memory=True)
    assert transport.queries == ["get_unpacked"]


def test_download_garbage(client, transport):
    transport.queue(b"<html>maintenance</html>")
    with pytest.raises(ArchiveError):
        client.download_sample("s" * 64)


def test_download_archive_as_served(client, transport):
    archive = build_encrypted_archive([("eicar.com", EICAR)])
    transport.queue(archive)
    assert client.download_sample_archive("s" * 64) == archive


# ---------------------------------------------------------------------------
# YARA rules
# ---------------------------------------------------------------------------

def test_recent_yara_rules(client, transport):
    transport.queue(ok([{"yarahub_uuid": "u1", "rule_name": "R1"}]))
    rules = client.recent_yara_rules()
    assert transport.posts == [{"query": "recent_yararules"}]
    assert rules[0].uuid == "u1"


def test_download_yara_rule(client, transport):
    transport.queue(b"rule R1 { condition: true }")
    assert client.download_yara_rule("u1") == "rule R1 { condition: true }"
    assert transport.posts[0] == {"query": "get_yara_rule", "uuid": "u1"}


def test_download_yara_rules_skips_unshareable(client, transport):
    transport.queue(b"rule A {}", {"query_status": "not_shareable"})
    rules = client.download_yara_rules(["u1", "u2"])
    assert rules == {"u1": "rule A {}"}


def test_download_all_yara_rules(client, transport):
    transport.queue(build_plain_archive([("a.yar", b"rule A {}"), ("b.yar", b"rule B {}")]))
    assert client.download_all_yara_rules(in_memory=True) == ["rule A {}", "rule B {}"]
    assert transport.gets == [YARAIFY_RULES_URL]
    assert transport.posts == []


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def test_transport_headers():
    transport = YaraifyTransport(YaraifyConfig(api_key="k", proxy="http://127.0.0.1:8080"))
    assert transport.session.headers["Auth-Key"] == "k"
    assert transport.session.proxies["https"] == "http://127.0.0.1:8080"
    assert "Auth-Key" not in YaraifyTransport(YaraifyConfig()).session.headers


def test_transport_wraps_request_errors(monkeypatch):
    transport = YaraifyTransport(YaraifyConfig())

    def boom(*args, **kwargs):
        raise requests.exceptions.ConnectTimeout("timed out")

    monkeypatch.setattr(transport.session, "request", boom)
    with pytest.raises(ConnectionError):
        transport.post(b"{}")


# ---------------------------------------------------------------------------
# Local analysis and config
# ---------------------------------------------------------------------------

def test_analyze_file(tmp_path):
    sample = tmp_path / "eicar.com"
    sample.write_bytes(EICAR)
    info = analyze_file(str(sample))
    assert info.size == len(EICAR)
    assert info.sha256 == hashlib.sha256(EICAR).hexdigest()
    assert info.sha3_384 == hashlib.sha3_384(EICAR).hexdigest()
    assert info.imphash is None


def test_analyze_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        analyze_file(str(tmp_path / "missing"))


def test_config_roundtrip(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_API_KEY, raising=False)
    monkeypatch.delenv(ENV_MALPEDIA_TOKEN, raising=False)
    path = tmp_path / "config.json"
    save_config(YaraifyConfig(api_key="k", result_limit=100, unpack=True), path)
    loaded = load_config(path)
    assert loaded.api_key == "k"
    assert loaded.result_limit == 100
    assert loaded.unpack is True
    assert loaded.malpedia_token is None


def test_config_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv(ENV_API_KEY, "from-env")
    monkeypatch.setenv(ENV_MALPEDIA_TOKEN, "tok")
    path = tmp_path / "config.json"
    save_config(YaraifyConfig(api_key="from-file"), path)
    loaded = load_config(path)
    assert loaded.api_key == "from-env"
    assert loaded.malpedia_token == "tok"


def test_config_unreadable_falls_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_API_KEY, raising=False)
    monkeypatch.delenv(ENV_MALPEDIA_TOKEN, raising=False)
    path = tmp_path / "config.json"
    path.write_text("[1, 2]")
    assert load_config(path) == YaraifyConfig()
    path.write_text("{not json")
    assert load_config(path) == YaraifyConfig()
