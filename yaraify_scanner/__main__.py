#!/usr/bin/env python3
"""
YARAify Scanner CLI

Interact with abuse.ch YARAify for file scanning, task and hash lookups,
metadata searches, sample downloads and YARA rule retrieval.

Usage:
    python -m yaraify_scanner identifier                   # New private identifier
    python -m yaraify_scanner tasks <identifier>           # Tasks bound to an identifier
    python -m yaraify_scanner scan <file>...               # Upload and scan files
    python -m yaraify_scanner task <task_id>               # Results of one task
    python -m yaraify_scanner hash <hash>...               # Results by file hash
    python -m yaraify_scanner lookup <kind> <term>...      # yara/clamav/imphash/tlsh/...
    python -m yaraify_scanner download <sha256>            # Download a sample
    python -m yaraify_scanner unpacked <sha256>            # Download an unpacked sample
    python -m yaraify_scanner rule <uuid>...               # Download YARA rules
    python -m yaraify_scanner recent-rules                 # Recently deployed rules
    python -m yaraify_scanner all-rules <dir>              # Bulk rule feed
    python -m yaraify_scanner analyze <file>               # Local hashes only
    python -m yaraify_scanner config                       # Show/edit config
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List

from .batch import ErrorPolicy
from .client import (
    LOOKUP_QUERIES,
    YARAIFY_ENDPOINT,
    FileInfo,
    YaraifyClient,
    YaraifyConfig,
    analyze_file,
    load_config,
    save_config,
)
from .codec import hexdump
from .errors import DecodeError, InputValidationError, YaraifyError
from .models import (
    IdentifierFilter,
    IdentifierResult,
    Metadata,
    TaskResult,
    YaraRuleMetadata,
)


# ---------------------------------------------------------------------------
# Output formatting
# ---------------------------------------------------------------------------

class Output:
    """Handle output formatting."""

    def __init__(self, json_mode: bool = False, verbose: bool = False, quiet: bool = False):
        self.json_mode = json_mode
        self.verbose = verbose
        self.quiet = quiet

    def info(self, msg: str):
        if not self.quiet:
            print(msg, file=sys.stderr)

    def error(self, msg: str):
        print(f"ERROR: {msg}", file=sys.stderr)

    def dump(self, obj):
        print(json.dumps(obj, indent=2, default=str))

    def metadata(self, m: Metadata, indent: str = ""):
        if self.json_mode:
            self.dump(m.to_dict())
            return
        print(f"{indent}File:           {m.file_name}")
        print(f"{indent}Size:           {m.file_size} bytes")
        if m.mime_type:
            print(f"{indent}MIME:           {m.mime_type}")
        print(f"{indent}SHA-256:        {m.sha256}")
        if m.md5:
            print(f"{indent}MD5:            {m.md5}")
        if m.sha1:
            print(f"{indent}SHA-1:          {m.sha1}")
        if m.first_seen:
            print(f"{indent}First seen:     {m.first_seen}")
        if m.last_seen:
            print(f"{indent}Last seen:      {m.last_seen}")
        if m.sightings:
            print(f"{indent}Sightings:      {m.sightings}")
        if self.verbose:
            for label, value in (
                ("SHA3-384", m.sha3_384),
                ("ImpHash", m.imphash),
                ("SSDEEP", m.ssdeep),
                ("TLSH", m.tlsh),
                ("TelfHash", m.telfhash),
                ("GimpHash", m.gimphash),
                ("Icon dhash", m.dhash_icon),
            ):
                if value:
                    print(f"{indent}{label + ':':<16}{value}")

    def metadata_list(self, items: List[Metadata]):
        if self.json_mode:
            self.dump([m.to_dict() for m in items])
            return
        if not items:
            print("  (no results)")
            return
        for i, m in enumerate(items, start=1):
            print(f"[{i}]")
            self.metadata(m, indent="  ")

    def task_result(self, result: TaskResult):
        if self.json_mode:
            self.dump(result.to_dict())
            return
        if result.metadata:
            self.metadata(result.metadata)
        else:
            print("No metadata in response")
        for task in result.tasks:
            print()
            print(f"Task {task.task_id}  {task.timestamp}  {task.file_name}")
            if task.clamav_results:
                print(f"  ClamAV:       {', '.join(task.clamav_results)}")
            if not task.all_matches:
                print("  YARA:         (no matches)")
            for match in task.all_matches:
                line = f"  YARA:         {match.rule_name}"
                if match.author:
                    line += f" by {match.author}"
                if match.tlp:
                    line += f" [{match.tlp}]"
                print(line)
            if self.verbose:
                for unpacked in task.unpack_results:
                    print(f"  Unpacked:     {unpacked.file_name} sha256={unpacked.sha256}")

    def identifier_results(self, results: List[IdentifierResult]):
        if self.json_mode:
            self.dump([asdict(r) for r in results])
            return
        if not results:
            print("  (no tasks)")
        for r in results:
            print(f"  {r.task_id}  {r.task_status:<10} {r.sha256}  {r.file_name}")

    def rule_metadata(self, rules: List[YaraRuleMetadata]):
        if self.json_mode:
            self.dump([asdict(r) for r in rules])
            return
        for r in rules:
            family = f" ({r.malpedia_family})" if r.malpedia_family else ""
            print(f"  {r.uuid}  {r.rule_name}{family}")
            if self.verbose:
                print(f"      author={r.author} date={r.date} "
                      f"tlp={r.matching_tlp}/{r.sharing_tlp} license={r.license}")

    def file_info(self, info: FileInfo):
        if self.json_mode:
            self.dump(info.to_dict())
            return
        print(f"File:           {info.path}")
        print(f"Size:           {info.size} bytes")
        print(f"SHA-256:        {info.sha256}")
        print(f"SHA-1:          {info.sha1}")
        print(f"MD5:            {info.md5}")
        print(f"SHA3-384:       {info.sha3_384}")
        if info.imphash:
            print(f"ImpHash:        {info.imphash}")
        if info.ssdeep_hash:
            print(f"SSDEEP:         {info.ssdeep_hash}")
        if info.tlsh_hash:
            print(f"TLSH:           {info.tlsh_hash}")

    def summary(self, requested: List[str], succeeded: Dict):
        missing = [k for k in requested if k not in succeeded]
        self.info(f"{len(succeeded)}/{len(requested)} succeeded")
        for key in missing:
            self.info(f"  failed: {key}")


# ---------------------------------------------------------------------------
# CLI commands
# ---------------------------------------------------------------------------

def _policy(args) -> ErrorPolicy:
    return ErrorPolicy.ABORT if getattr(args, "strict", False) else ErrorPolicy.CONTINUE


def cmd_identifier(args, client: YaraifyClient, out: Output):
    """Generate a new private identifier."""
    identifier = client.create_identifier()
    if out.json_mode:
        out.dump({"identifier": identifier})
    else:
        print(identifier)


def cmd_tasks(args, client: YaraifyClient, out: Output):
    """List the tasks bound to an identifier."""
    results = client.query_identifier(args.identifier, IdentifierFilter(args.status))
    out.identifier_results(results)


def cmd_scan(args, client: YaraifyClient, out: Output):
    """Upload files (or every file in a folder) for scanning."""
    flags = dict(
        identifier=args.identifier,
        clamav=args.clamav,
        unpack=args.unpack,
        share_file=args.share,
        skip_known=args.skip_known,
        skip_noisy=args.skip_noisy,
    )

    if len(args.files) == 1 and Path(args.files[0]).is_dir():
        out.info(f"Scanning folder: {args.files[0]}")
        results = client.scan_folder(args.files[0], policy=_policy(args), **flags)
        requested = sorted(str(p) for p in Path(args.files[0]).iterdir() if p.is_file())
    elif len(args.files) == 1:
        out.info(f"Uploading {args.files[0]}...")
        out.metadata(client.scan_file(args.files[0], **flags))
        return
    else:
        results = client.scan_files(args.files, policy=_policy(args), **flags)
        requested = list(args.files)

    if out.json_mode:
        out.dump({path: m.to_dict() for path, m in results.items()})
    else:
        for path, m in results.items():
            print(f"{path}:")
            out.metadata(m, indent="  ")
    out.summary(requested, results)


def cmd_task(args, client: YaraifyClient, out: Output):
    """Show the results of one task."""
    out.task_result(client.query_task_id(args.task_id))


def cmd_hash(args, client: YaraifyClient, out: Output):
    """Show every task recorded for one or more file hashes."""
    if len(args.hashes) == 1:
        out.task_result(client.query_file_hash(args.hashes[0]))
        return
    results = client.query_file_hashes(args.hashes, policy=_policy(args))
    if out.json_mode:
        out.dump({h: r.to_dict() for h, r in results.items()})
    else:
        for file_hash, result in results.items():
            print(f"=== {file_hash}")
            out.task_result(result)
            print()
    out.summary(args.hashes, results)


def cmd_lookup(args, client: YaraifyClient, out: Output):
    """Search file metadata by rule name or fuzzy/import hash."""
    if len(args.terms) == 1:
        out.metadata_list(client.lookup(args.kind, args.terms[0], limit=args.limit))
        return
    results = client.lookup_many(args.kind, args.terms, limit=args.limit, policy=_policy(args))
    if out.json_mode:
        out.dump({term: [m.to_dict() for m in items] for term, items in results.items()})
    else:
        for term, items in results.items():
            print(f"=== {term} ({len(items)} results)")
            out.metadata_list(items)
    out.summary(args.terms, results)


def _write_download(args, data: bytes, out: Output):
    target = Path(args.output or args.sha256)
    target.write_bytes(data)
    out.info(f"Wrote {len(data)} bytes to {target}")


def cmd_download(args, client: YaraifyClient, out: Output):
    """Download a sample."""
    if args.archive:
        data = client.download_sample_archive(args.sha256)
    else:
        data = client.download_sample(args.sha256, temp_path=args.temp_path, in_memory=args.in_memory)
    _write_download(args, data, out)


def cmd_unpacked(args, client: YaraifyClient, out: Output):
    """Download the unpacked payload of a sample."""
    if args.archive:
        data = client.download_unpacked_archive(args.sha256)
    else:
        data = client.download_unpacked_sample(
            args.sha256, temp_path=args.temp_path, in_memory=args.in_memory,
        )
    _write_download(args, data, out)


def cmd_rule(args, client: YaraifyClient, out: Output):
    """Download YARA rules by UUID."""
    if len(args.uuids) == 1:
        print(client.download_yara_rule(args.uuids[0]))
        return
    rules = client.download_yara_rules(args.uuids, policy=_policy(args))
    if out.json_mode:
        out.dump(rules)
    else:
        for uuid, rule in rules.items():
            print(f"// {uuid}")
            print(rule)
    out.summary(args.uuids, rules)


def cmd_recent_rules(args, client: YaraifyClient, out: Output):
    """List recently deployed YARA rules."""
    out.rule_metadata(client.recent_yara_rules())


def cmd_all_rules(args, client: YaraifyClient, out: Output):
    """Download the bulk rule feed."""
    if args.archive:
        data = client.download_all_yara_rules_archive()
        target = Path(args.output_dir) / "yaraify-rules.zip"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        out.info(f"Wrote {len(data)} bytes to {target}")
        return

    rules = client.download_all_yara_rules(temp_path=args.temp_path, in_memory=args.in_memory)
    out_dir = Path(args.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    for i, rule in enumerate(rules, start=1):
        (out_dir / f"rule_{i:05d}.yar").write_text(rule)
    out.info(f"Wrote {len(rules)} rules to {out_dir}")


def cmd_analyze(args, client: YaraifyClient, out: Output):
    """Compute local hashes (no upload)."""
    out.file_info(analyze_file(args.file))


def cmd_config(args, config: YaraifyConfig, out: Output):
    """Show or update configuration."""
    if args.set_api_key:
        config.api_key = args.set_api_key if args.set_api_key != "none" else None
    if args.set_malpedia_token:
        config.malpedia_token = args.set_malpedia_token if args.set_malpedia_token != "none" else None
    if args.set_endpoint:
        config.endpoint = args.set_endpoint
    if args.set_proxy:
        config.proxy = args.set_proxy if args.set_proxy != "none" else None
    if args.set_limit is not None:
        config.result_limit = args.set_limit

    if args.save:
        save_config(config)
        out.info("Config saved")

    shown = asdict(config)
    for secret in ("api_key", "malpedia_token"):
        if shown.get(secret):
            shown[secret] = shown[secret][:4] + "..."
    if out.json_mode:
        out.dump(shown)
    else:
        for key, value in shown.items():
            print(f"  {key + ':':<16}{value}")


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="yaraify_scanner",
        description="YARAify Scanner - abuse.ch YARA scanning and malware intelligence",
    )

    # Global options
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress info messages")
    parser.add_argument("-j", "--json", action="store_true", help="JSON output")
    parser.add_argument("--api-key", help="YARAify Auth-Key (or set YARAIFY_API_KEY)")
    parser.add_argument("--malpedia-token", help="Malpedia API token for family attribution")
    parser.add_argument("--endpoint", help=f"API endpoint URL (default: {YARAIFY_ENDPOINT})")
    parser.add_argument("--proxy", help="HTTP proxy (e.g., http://127.0.0.1:8080)")
    parser.add_argument("--no-verify", action="store_true", help="Disable TLS certificate verification")
    parser.add_argument("--timeout", type=int, help="Request timeout in seconds")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("identifier", help="Generate a private identifier")

    p_tasks = subparsers.add_parser("tasks", help="List tasks bound to an identifier")
    p_tasks.add_argument("identifier", help="Identifier from the 'identifier' command")
    p_tasks.add_argument("--status", choices=[f.value for f in IdentifierFilter], default="all")

    p_scan = subparsers.add_parser("scan", help="Upload files for scanning")
    p_scan.add_argument("files", nargs="+", help="Files to upload, or a single folder")
    p_scan.add_argument("--identifier", help="Bind uploads to this identifier")
    p_scan.add_argument("--clamav", action=argparse.BooleanOptionalAction, default=None,
                        help="Scan with ClamAV signatures")
    p_scan.add_argument("--unpack", action=argparse.BooleanOptionalAction, default=None,
                        help="Run the unpacker")
    p_scan.add_argument("--share", action=argparse.BooleanOptionalAction, default=None,
                        help="Allow the sample to be shared")
    p_scan.add_argument("--skip-known", action=argparse.BooleanOptionalAction, default=None,
                        help="Skip files already known to YARAify")
    p_scan.add_argument("--skip-noisy", action=argparse.BooleanOptionalAction, default=None,
                        help="Skip files uploaded 10+ times in the last 24h")
    p_scan.add_argument("--strict", action="store_true", help="Stop at the first failure")

    p_task = subparsers.add_parser("task", help="Results of a task")
    p_task.add_argument("task_id", help="Task ID")

    p_hash = subparsers.add_parser("hash", help="Results by file hash")
    p_hash.add_argument("hashes", nargs="+", help="MD5, SHA-1, SHA-256 or SHA3-384 hashes")
    p_hash.add_argument("--strict", action="store_true", help="Stop at the first failure")

    p_lookup = subparsers.add_parser("lookup", help="Search files by rule or hash family")
    p_lookup.add_argument("kind", choices=sorted(LOOKUP_QUERIES))
    p_lookup.add_argument("terms", nargs="+", help="Rule names or hashes")
    p_lookup.add_argument("--limit", type=int, help="Results per term (1-1000, default 25)")
    p_lookup.add_argument("--strict", action="store_true", help="Stop at the first failure")

    for name, help_text in (("download", "Download a sample"),
                            ("unpacked", "Download the unpacked payload of a sample")):
        p_dl = subparsers.add_parser(name, help=help_text)
        p_dl.add_argument("sha256", help="SHA-256 of the sample")
        p_dl.add_argument("-o", "--output", help="Output file (default: <sha256>)")
        p_dl.add_argument("--archive", action="store_true",
                          help="Keep the password-protected ZIP as served")
        p_dl.add_argument("--temp-path", help="Spool the archive here while extracting")
        p_dl.add_argument("--in-memory", action="store_true", help="Extract without touching disk")

    p_rule = subparsers.add_parser("rule", help="Download YARA rules by UUID")
    p_rule.add_argument("uuids", nargs="+", help="Rule UUIDs")
    p_rule.add_argument("--strict", action="store_true", help="Stop at the first failure")

    subparsers.add_parser("recent-rules", help="List recently deployed YARA rules")

    p_all = subparsers.add_parser("all-rules", help="Download every shareable YARA rule")
    p_all.add_argument("output_dir", help="Directory to write rules into")
    p_all.add_argument("--archive", action="store_true", help="Keep the ZIP as served")
    p_all.add_argument("--temp-path", help="Spool the archive here while extracting")
    p_all.add_argument("--in-memory", action="store_true", help="Extract without touching disk")

    p_analyze = subparsers.add_parser("analyze", help="Compute local hashes only")
    p_analyze.add_argument("file", help="File to analyze")

    p_config = subparsers.add_parser("config", help="Show/edit configuration")
    p_config.add_argument("--set-api-key", help="Set API key (or 'none' to clear)")
    p_config.add_argument("--set-malpedia-token", help="Set Malpedia token (or 'none' to clear)")
    p_config.add_argument("--set-endpoint", help="Set API endpoint")
    p_config.add_argument("--set-proxy", help="Set proxy (or 'none' to clear)")
    p_config.add_argument("--set-limit", type=int, help="Default result limit")
    p_config.add_argument("--save", action="store_true", help="Persist to disk")

    return parser


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

COMMANDS = {
    "identifier": cmd_identifier,
    "tasks": cmd_tasks,
    "scan": cmd_scan,
    "task": cmd_task,
    "hash": cmd_hash,
    "lookup": cmd_lookup,
    "download": cmd_download,
    "unpacked": cmd_unpacked,
    "rule": cmd_rule,
    "recent-rules": cmd_recent_rules,
    "all-rules": cmd_all_rules,
    "analyze": cmd_analyze,
}


def main(argv=None, client: YaraifyClient = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    level = logging.DEBUG if args.verbose else logging.ERROR if args.quiet else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    # Load/build config
    config = load_config()

    # Apply CLI overrides
    if args.api_key:
        config.api_key = args.api_key
    if args.malpedia_token:
        config.malpedia_token = args.malpedia_token
    if args.endpoint:
        config.endpoint = args.endpoint
    if args.proxy:
        config.proxy = args.proxy
    if args.no_verify:
        config.verify_ssl = False
    if args.timeout:
        config.timeout = args.timeout

    out = Output(json_mode=args.json, verbose=args.verbose, quiet=args.quiet)

    try:
        if args.command == "config":
            cmd_config(args, config, out)
            return 0
        handler = COMMANDS[args.command]
        handler(args, client or YaraifyClient(config), out)
    except (FileNotFoundError, InputValidationError) as e:
        out.error(str(e))
        return 1
    except DecodeError as e:
        out.error(str(e))
        if args.verbose and e.raw:
            print(f"\n  Raw response ({len(e.raw)} bytes):", file=sys.stderr)
            print(hexdump(e.raw, length=512), file=sys.stderr)
        return 1
    except (YaraifyError, ConnectionError) as e:
        out.error(str(e))
        return 1
    except KeyboardInterrupt:
        out.info("\nInterrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
