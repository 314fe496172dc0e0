#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = ["httpx", "rich"]
# ///
"""Cisco network status line for the BitBar/xbar menu bar.

Prints one line combining:

* corporate network status (``cisco.com`` DNS search domain)
* VPN status (``utun0`` tunnel interface)
* Internet connectivity (web and DNS)
* the country our egress IP appears to be in

Examples:
    HK                                  plain connection from Hong Kong
    HK www:xx dns:ok                    from Hong Kong, web blocked
    .:I:.:I:. <vpn> SG                  corporate VPN, exiting in Singapore
    Unknown connection www:xx dns:xx    no connectivity at all

Usage:
    uv run cisconetwork.py              # status line only
    uv run cisconetwork.py --details    # plus a table of each step on stderr
    uv run cisconetwork.py --debug      # log every probe on stderr
"""
# <bitbar.title>CiscoNetwork</bitbar.title>
# <bitbar.version>v1.1.0</bitbar.version>
# <bitbar.desc>Display combined connection information specific for the Cisco corporate network</bitbar.desc>
from __future__ import annotations

import argparse
import asyncio
import hashlib
import logging
import os
import subprocess
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

import httpx
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

log = logging.getLogger("cisconetwork")

# ── Constants ──────────────────────────────────────────────────────────────────

RESOLV_CONF = Path("/etc/resolv.conf")
CORPORATE_DOMAIN = "cisco.com"

PHYSICAL_INTERFACES = ("en0", "en1")
VPN_INTERFACE = "utun0"

# Optional connectivity helper, see github.com/tobyoxborrow/msncsiasm
HELPER_PATH = Path("~/bin/msncsi")
HELPER_TIMEOUT = 10

NCSI_URL = "http://www.msftncsi.com/ncsi.txt"
NCSI_NEEDLE = "Microsoft NCSI"
NCSI_DNS_HOST = "dns.msftncsi.com"
DNS_TIMEOUT = 4

CACHE_DIR = Path("/tmp")
HASH_FILE = "bitbar.cisconetwork.connection_hash.txt"
COUNTRY_FILE = "bitbar.cisconetwork.last_country.txt"

# Whole-request budget, like curl --max-time; httpx timeouts only bound each phase
HTTP_DEADLINE = 4.0
HTTP_TIMEOUT = httpx.Timeout(HTTP_DEADLINE, connect=2.0)
USER_AGENT = "cisconetwork/1.1"

NETWORK_MARKER_CORPORATE = ".:I:.:I:. "
NETWORK_MARKER_UNKNOWN = "Unknown connection "
VPN_MARKER = "<vpn> "

# Bodies containing any of these are error pages, not data.
INVALID_BODY_MARKERS = (
    ("<html", "html page"),
    ("<!doctype", "html page"),
    ("rate limit exceeded", "rate limited"),
    ("try again later", "rate limited"),
)


# ── Data Models ────────────────────────────────────────────────────────────────

class NetworkKind(Enum):
    CORPORATE = "corporate"
    OTHER = "other"
    UNKNOWN = "unknown"


class Connectivity(Enum):
    REACHABLE = "reachable"
    WEB_BLOCKED = "web_blocked"
    UNREACHABLE = "unreachable"


NETWORK_MARKERS = {
    NetworkKind.CORPORATE: NETWORK_MARKER_CORPORATE,
    NetworkKind.OTHER: "",
    NetworkKind.UNKNOWN: NETWORK_MARKER_UNKNOWN,
}

CONNECTIVITY_TEXT = {
    Connectivity.REACHABLE: "OK",
    Connectivity.WEB_BLOCKED: "www:xx dns:ok ",
    Connectivity.UNREACHABLE: "www:xx dns:xx ",
}


@dataclass(frozen=True)
class Valid:
    body: str


@dataclass(frozen=True)
class Invalid:
    reason: str


@dataclass(frozen=True)
class CountryProvider:
    name: str
    url: str
    parse: Callable[[str], str]


@dataclass
class Settings:
    resolv_conf: Path = RESOLV_CONF
    corporate_domain: str = CORPORATE_DOMAIN
    physical_interfaces: tuple[str, ...] = PHYSICAL_INTERFACES
    vpn_interface: str = VPN_INTERFACE
    helper_path: Path = HELPER_PATH
    ncsi_url: str = NCSI_URL
    ncsi_needle: str = NCSI_NEEDLE
    ncsi_dns_host: str = NCSI_DNS_HOST
    cache_dir: Path = CACHE_DIR
    providers: list[CountryProvider] = field(default_factory=lambda: list(COUNTRY_PROVIDERS))


@dataclass
class Status:
    network: NetworkKind
    vpn: bool
    connectivity: Connectivity
    country: str = ""
    signature: str = ""
    cache_hit: bool | None = None


# ── Utilities ──────────────────────────────────────────────────────────────────

def run_command(args: Sequence[str], timeout: float | None = None) -> subprocess.CompletedProcess[str] | None:
    """Run a command, returning None when it cannot be started or times out."""
    try:
        return subprocess.run(
            list(args), capture_output=True, text=True, check=False, timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        log.debug("%s timed out after %ss", args[0], timeout)
    except OSError as exc:
        log.debug("cannot run %s: %s", args[0], exc)
    return None


def interface_lines(name: str, needle: str) -> str:
    """Lines of ``ifconfig <name>`` containing ``needle``, or "" if no such interface."""
    result = run_command(["ifconfig", name])
    if result is None or result.returncode != 0:
        return ""
    return "".join(line + "\n" for line in result.stdout.splitlines() if needle in line)


def connection_signature(
    physical: Sequence[str] = PHYSICAL_INTERFACES,
    tunnel: str = VPN_INTERFACE,
) -> str:
    """Hash of the current addressing, used to notice that the connection changed."""
    state = "".join(interface_lines(name, "inet") for name in physical)
    state += interface_lines(tunnel, "-->")
    return hashlib.sha1(state.encode()).hexdigest()


# ── Network & VPN ──────────────────────────────────────────────────────────────

def classify_network(resolv_conf: Path = RESOLV_CONF, domain: str = CORPORATE_DOMAIN) -> NetworkKind:
    # DHCP adds the corporate search domain on the corporate network and on the VPN
    try:
        content = resolv_conf.read_text(errors="replace")
    except OSError as exc:
        log.debug("cannot read %s: %s", resolv_conf, exc)
        return NetworkKind.UNKNOWN
    return NetworkKind.CORPORATE if domain in content else NetworkKind.OTHER


def vpn_active(interface: str = VPN_INTERFACE) -> bool:
    """True when the tunnel interface exists.

    Coming out of sleep macOS sometimes leaves ``utun0`` behind after the VPN
    went down, so this can report a VPN that is no longer up.
    """
    result = run_command(["ifconfig", interface])
    return result is not None and result.returncode == 0


# ── Connectivity ───────────────────────────────────────────────────────────────

def probe_with_helper(helper: Path) -> Connectivity:
    result = run_command([str(helper)], timeout=HELPER_TIMEOUT)
    code = result.returncode if result is not None else -1
    log.debug("%s exited with %s", helper, code)
    match code:
        case 0:
            return Connectivity.REACHABLE
        case 1:
            return Connectivity.WEB_BLOCKED
        case _:
            return Connectivity.UNREACHABLE


async def http_get(client: httpx.AsyncClient, url: str) -> httpx.Response | None:
    """GET ``url`` with the whole exchange, body included, bounded by HTTP_DEADLINE."""
    try:
        return await asyncio.wait_for(client.get(url), HTTP_DEADLINE)
    except asyncio.TimeoutError:
        log.debug("GET %s gave up after %ss", url, HTTP_DEADLINE)
    except httpx.HTTPError as exc:
        log.debug("GET %s failed: %s", url, exc)
    return None


async def probe_web(client: httpx.AsyncClient, url: str = NCSI_URL, needle: str = NCSI_NEEDLE) -> bool:
    resp = await http_get(client, url)
    return resp is not None and needle in resp.text


def probe_dns(host: str = NCSI_DNS_HOST, timeout: int = DNS_TIMEOUT) -> bool:
    result = run_command(
        ["dig", f"+time={timeout}", "+tries=1", host], timeout=timeout + 1,
    )
    return result is not None and result.returncode == 0


async def probe_connectivity(client: httpx.AsyncClient, settings: Settings) -> Connectivity:
    helper = settings.helper_path.expanduser()
    if helper.is_file():
        return probe_with_helper(helper)

    if await probe_web(client, settings.ncsi_url, settings.ncsi_needle):
        return Connectivity.REACHABLE
    if probe_dns(settings.ncsi_dns_host):
        return Connectivity.WEB_BLOCKED
    return Connectivity.UNREACHABLE


# ── Country Lookup ─────────────────────────────────────────────────────────────

def classify_response(body: str) -> Valid | Invalid:
    """Reject error pages and rate-limit notices; keep the first line otherwise."""
    lowered = body.lower()
    for marker, reason in INVALID_BODY_MARKERS:
        if marker in lowered:
            return Invalid(reason)
    lines = body.strip().splitlines()
    if not lines:
        return Invalid("empty response")
    return Valid(lines[0].strip())


def parse_plain(line: str) -> str:
    return line.strip()


def parse_csv(line: str) -> str:
    fields = line.split(",")
    return fields[2].strip() if len(fields) >= 3 else ""


# ipinfo.io is quick but allows 1000 requests/day; freegeoip.net is slower
# with a much higher limit.
COUNTRY_PROVIDERS = [
    CountryProvider("ipinfo.io", "https://ipinfo.io/country", parse_plain),
    CountryProvider("freegeoip", "http://freegeoip.net/csv/", parse_csv),
]


async def fetch(client: httpx.AsyncClient, url: str) -> str | None:
    resp = await http_get(client, url)
    if resp is None:
        return None
    if resp.is_error:
        log.debug("GET %s returned HTTP %s", url, resp.status_code)
        return None
    return resp.text


async def lookup_country(client: httpx.AsyncClient, providers: Sequence[CountryProvider] = COUNTRY_PROVIDERS) -> str:
    for provider in providers:
        body = await fetch(client, provider.url)
        if body is None:
            continue
        match classify_response(body):
            case Invalid(reason=reason):
                log.debug("%s: discarding response (%s)", provider.name, reason)
            case Valid(body=line):
                country = provider.parse(line)
                if country:
                    log.debug("%s: country %s", provider.name, country)
                    return country
    return ""


# ── Cache ──────────────────────────────────────────────────────────────────────

class CountryCache(Protocol):
    def get(self, signature: str) -> str | None: ...

    def set(self, signature: str, country: str) -> None: ...


class MemoryCountryCache:
    def __init__(self, signature: str | None = None, country: str = "") -> None:
        self.signature = signature
        self.country = country

    def get(self, signature: str) -> str | None:
        if self.signature is None or self.signature != signature:
            return None
        return self.country

    def set(self, signature: str, country: str) -> None:
        self.signature = signature
        self.country = country


class FileCountryCache:
    """Country and connection hash kept in two single-line files.

    There is no locking: overlapping refreshes may race on these files.
    """

    def __init__(self, directory: Path = CACHE_DIR) -> None:
        self.hash_path = directory / HASH_FILE
        self.country_path = directory / COUNTRY_FILE

    def get(self, signature: str) -> str | None:
        try:
            country = self.country_path.read_text()
        except OSError as exc:
            log.debug("cannot read %s: %s", self.country_path, exc)
            return None
        try:
            saved = self.hash_path.read_text().rstrip("\n")
        except OSError as exc:
            log.debug("cannot read %s: %s", self.hash_path, exc)
            saved = ""
        if saved != signature:
            return None
        return country.rstrip("\n")

    def set(self, signature: str, country: str) -> None:
        try:
            self.country_path.write_text(f"{country}\n")
            self.hash_path.write_text(f"{signature}\n")
        except OSError as exc:
            log.warning("cannot update cache in %s: %s", self.country_path.parent, exc)


async def resolve_country(
    client: httpx.AsyncClient,
    cache: CountryCache,
    signature: str,
    providers: Sequence[CountryProvider] = COUNTRY_PROVIDERS,
) -> tuple[str, bool]:
    """Return (country, cache_hit) for the given connection signature."""
    cached = cache.get(signature)
    if cached is not None:
        log.debug("connection unchanged, cached country %r", cached)
        return cached, True

    country = await lookup_country(client, providers)
    cache.set(signature, country)
    return country, False


# ── Orchestration ──────────────────────────────────────────────────────────────

def create_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=HTTP_TIMEOUT,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    )


async def collect_status(settings: Settings, client: httpx.AsyncClient, cache: CountryCache) -> Status:
    status = Status(
        network=classify_network(settings.resolv_conf, settings.corporate_domain),
        vpn=vpn_active(settings.vpn_interface),
        connectivity=await probe_connectivity(client, settings),
    )
    log.debug("network=%s vpn=%s connectivity=%s",
              status.network.value, status.vpn, status.connectivity.value)

    if status.connectivity is Connectivity.REACHABLE:
        status.signature = connection_signature(settings.physical_interfaces, settings.vpn_interface)
        status.country, status.cache_hit = await resolve_country(
            client, cache, status.signature, settings.providers,
        )
    return status


async def gather_status(settings: Settings, cache: CountryCache) -> Status:
    async with create_client() as client:
        return await collect_status(settings, client, cache)


def format_status(status: Status) -> str:
    text = CONNECTIVITY_TEXT[status.connectivity]
    if status.connectivity is Connectivity.REACHABLE and status.country:
        text = status.country
    vpn = VPN_MARKER if status.vpn else ""
    return f"{NETWORK_MARKERS[status.network]}{vpn}{text}"


# ── Output Rendering ──────────────────────────────────────────────────────────

def render_details(console: Console, status: Status) -> None:
    table = Table(
        title="[bold cyan]Cisco Network[/bold cyan]",
        show_header=True,
        header_style="bold white",
        border_style="dim",
        padding=(0, 1),
    )
    table.add_column("Step", style="bold")
    table.add_column("Result")

    table.add_row("Network", status.network.value)
    table.add_row("VPN", "[green]up[/green]" if status.vpn else "[dim]down[/dim]")
    table.add_row("Connectivity", status.connectivity.value)
    if status.signature:
        table.add_row("Signature", status.signature[:12])
    if status.cache_hit is not None:
        source = "cache" if status.cache_hit else "lookup"
        table.add_row("Country", f"{status.country or '[dim]unknown[/dim]'} ({source})")

    console.print(table)


# ── CLI & Main ─────────────────────────────────────────────────────────────────

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes", "on")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Cisco network status line for the menu bar",
    )
    parser.add_argument(
        "--cache-dir", type=Path,
        default=Path(os.environ.get("CISCONETWORK_CACHE_DIR", CACHE_DIR)),
        help="Directory holding the country cache files",
    )
    parser.add_argument(
        "--helper", type=Path,
        default=Path(os.environ.get("CISCONETWORK_HELPER", HELPER_PATH)),
        help="Connectivity helper program, used when present",
    )
    parser.add_argument("--resolv-conf", type=Path, default=RESOLV_CONF, help="Resolver configuration")
    parser.add_argument("--domain", default=CORPORATE_DOMAIN, help="Corporate DNS search domain")
    parser.add_argument("--no-cache", action="store_true", help="Always look up the country")
    parser.add_argument("--details", action="store_true", help="Show each step on stderr")
    parser.add_argument(
        "--debug", action="store_true", default=_env_flag("CISCONETWORK_DEBUG"),
        help="Log probes on stderr",
    )
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        resolv_conf=args.resolv_conf,
        corporate_domain=args.domain,
        helper_path=args.helper,
        cache_dir=args.cache_dir,
    )


def setup_logging(debug: bool) -> None:
    # stdout belongs to the menu bar, logs go to stderr
    handler = RichHandler(console=Console(stderr=True), show_path=False, log_time_format="[%X]")
    handler.setFormatter(logging.Formatter("%(message)s"))
    log.handlers[:] = [handler]
    log.setLevel(logging.DEBUG if debug else logging.WARNING)
    log.propagate = False


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.debug)
    settings = settings_from_args(args)

    cache: CountryCache
    if args.no_cache:
        cache = MemoryCountryCache()
    else:
        cache = FileCountryCache(settings.cache_dir)

    status = asyncio.run(gather_status(settings, cache))
    print(format_status(status))

    if args.details:
        render_details(Console(stderr=True), status)
    return 0


if __name__ == "__main__":
    sys.exit(main())
