#!/usr/bin/env python3
"""
Lighthouse accessibility audit with a JPEG snapshot of the HTML report.

Usage:
    python lighthouse_audit.py https://example.com
    python lighthouse_audit.py https://example.com --platform=mobile
    python lighthouse_audit.py --url=https://example.com --platform=desktop
"""

from __future__ import annotations

import argparse
import asyncio
import ipaddress
import json
import math
import re
import shutil
import socket
import sys
import tempfile
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, NoReturn

from playwright.async_api import async_playwright

PLATFORMS = ("desktop", "mobile")
DEFAULT_PLATFORM = "desktop"

AUDIT_CHROME_FLAGS = ["--no-sandbox", "--disable-dev-shm-usage"]
RENDER_CHROME_FLAGS = ["--no-sandbox", "--disable-setuid-sandbox"]

SETTLE_DELAY_MS = 2000
JPEG_QUALITY = 100
REPORT_PREFIX = "lighthouse-accessibility"
OUTPUT_DIR = Path(__file__).resolve().parent

NO_RESULT_MESSAGE = "Lighthouse audit failed to return results"

EXIT_OK = 0
EXIT_FAILURE = 1

USAGE_LINES = [
    "Usage: lighthouse_audit.py <URL> [--platform=desktop|mobile]",
    "   or: lighthouse_audit.py --url=<URL> --platform=<desktop|mobile>",
    "Example: lighthouse_audit.py https://example.com --platform=mobile",
]

URL_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:")
URL_NEWLINE_RE = re.compile(r"[\t\n\r]")
C0_AND_SPACE = "".join(chr(code) for code in range(0x21))
SPECIAL_SCHEMES = {"http", "https", "ws", "wss", "ftp", "file"}
FORBIDDEN_HOST_CHARS = set("\x00#/:<>?@[\\]^|")


class UsageError(Exception):
    """Bad command line; raised before any browser is started."""

    def __init__(self, message: str, show_usage: bool = False) -> None:
        super().__init__(message)
        self.show_usage = show_usage


class AuditError(RuntimeError):
    pass


@dataclass(frozen=True)
class Invocation:
    url: str
    platform: str


@dataclass(frozen=True)
class ScreenEmulation:
    mobile: bool
    width: int
    height: int
    device_scale_factor: float
    disabled: bool = False


@dataclass(frozen=True)
class Throttling:
    rtt_ms: float
    throughput_kbps: float
    cpu_slowdown_multiplier: float
    request_latency_ms: float
    download_throughput_kbps: float
    upload_throughput_kbps: float


@dataclass(frozen=True)
class Viewport:
    width: int
    height: int
    device_scale_factor: float


@dataclass(frozen=True)
class PlatformProfile:
    form_factor: str
    screen: ScreenEmulation
    throttling: Throttling
    viewport: Viewport

    def lighthouse_flags(self) -> list[str]:
        screen = self.screen
        throttling = self.throttling
        return [
            f"--form-factor={self.form_factor}",
            f"--screenEmulation.mobile={_flag_bool(screen.mobile)}",
            f"--screenEmulation.width={screen.width}",
            f"--screenEmulation.height={screen.height}",
            f"--screenEmulation.deviceScaleFactor={_flag_number(screen.device_scale_factor)}",
            f"--screenEmulation.disabled={_flag_bool(screen.disabled)}",
            f"--throttling.rttMs={_flag_number(throttling.rtt_ms)}",
            f"--throttling.throughputKbps={_flag_number(throttling.throughput_kbps)}",
            f"--throttling.cpuSlowdownMultiplier={_flag_number(throttling.cpu_slowdown_multiplier)}",
            f"--throttling.requestLatencyMs={_flag_number(throttling.request_latency_ms)}",
            f"--throttling.downloadThroughputKbps={_flag_number(throttling.download_throughput_kbps)}",
            f"--throttling.uploadThroughputKbps={_flag_number(throttling.upload_throughput_kbps)}",
        ]


DESKTOP_PROFILE = PlatformProfile(
    form_factor="desktop",
    screen=ScreenEmulation(mobile=False, width=1350, height=940, device_scale_factor=1),
    throttling=Throttling(
        rtt_ms=40,
        throughput_kbps=10240,
        cpu_slowdown_multiplier=1,
        request_latency_ms=0,
        download_throughput_kbps=0,
        upload_throughput_kbps=0,
    ),
    viewport=Viewport(width=1200, height=800, device_scale_factor=1),
)

MOBILE_PROFILE = PlatformProfile(
    form_factor="mobile",
    screen=ScreenEmulation(mobile=True, width=375, height=667, device_scale_factor=2),
    throttling=Throttling(
        rtt_ms=150,
        throughput_kbps=1638.4,
        cpu_slowdown_multiplier=4,
        request_latency_ms=150,
        download_throughput_kbps=1638.4,
        upload_throughput_kbps=675,
    ),
    viewport=Viewport(width=375, height=800, device_scale_factor=2),
)

PROFILES = {"desktop": DESKTOP_PROFILE, "mobile": MOBILE_PROFILE}


@dataclass(frozen=True)
class AuditResult:
    html: str
    score: float | None
    audits: dict[str, Any]

    @property
    def score_percent(self) -> int | None:
        if self.score is None:
            return None
        # Round half up, not to even.
        return int(math.floor(self.score * 100 + 0.5))

    @property
    def failed_audits(self) -> int:
        failed = 0
        for audit in self.audits.values():
            score = audit.get("score") if isinstance(audit, dict) else None
            if isinstance(score, (int, float)) and score < 1:
                failed += 1
        return failed


@dataclass(frozen=True)
class AuditBrowser:
    port: int


@dataclass(frozen=True)
class Artifacts:
    html_report: Path
    jpg_report: Path
    result: AuditResult


def _flag_bool(value: bool) -> str:
    return "true" if value else "false"


def _flag_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise UsageError(message, show_usage=True)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        description="Run a Lighthouse accessibility audit and snapshot the report as JPEG.",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument("targets", nargs="*", help="URL to audit (first positional value)")
    parser.add_argument("--url", help="URL to audit")
    parser.add_argument("--platform", default=DEFAULT_PLATFORM, help="desktop or mobile")
    return parser


def parse_args(argv: Sequence[str]) -> tuple[str | None, str]:
    """Extract ``(url, platform)`` from raw arguments.

    ``--url`` takes precedence over a positional value. A flag given as the
    last token with no value is ignored, and so are unknown flags.
    """
    tokens = list(argv)
    if tokens and tokens[-1] in ("--url", "--platform"):
        tokens = tokens[:-1]
    args, _unknown = build_parser().parse_known_intermixed_args(tokens)
    positional = [t for t in args.targets or [] if not t.startswith("--")]
    url = args.url or (positional[0] if positional else None)
    platform = str(args.platform).lower()
    return url, platform


def url_host(value: str) -> str:
    """Return the host of ``value`` the way a browser's URL parser reports it.

    Special schemes (http, https, ws, wss, ftp, file) tolerate missing or
    extra slashes before the authority, lower-case the host and IDNA-encode
    non-ASCII names. Path, query and fragment are not inspected. Raises
    ``ValueError`` when the URL does not parse.
    """
    candidate = URL_NEWLINE_RE.sub("", (value or "").strip(C0_AND_SPACE))
    match = URL_SCHEME_RE.match(candidate)
    if not match:
        raise ValueError(f"missing URL scheme: {value!r}")
    scheme = match.group(0)[:-1].lower()
    rest = candidate[match.end():]

    if scheme == "file" or scheme not in SPECIAL_SCHEMES:
        if not rest.startswith("//"):
            return ""
        rest = rest[2:]
    else:
        rest = rest.lstrip("/\\")

    terminators = r"[/\\?#]" if scheme in SPECIAL_SCHEMES else r"[/?#]"
    authority = re.split(terminators, rest, maxsplit=1)[0]
    hostport = authority.rpartition("@")[2]

    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"unterminated IPv6 host: {value!r}")
        host = f"[{ipaddress.IPv6Address(hostport[1:end]).compressed}]"
        port_text = hostport[end + 1:]
        if port_text and not port_text.startswith(":"):
            raise ValueError(f"invalid port: {value!r}")
        port_text = port_text[1:]
    else:
        host, _, port_text = hostport.partition(":")
        if any(ch in FORBIDDEN_HOST_CHARS or ch.isspace() for ch in host):
            raise ValueError(f"invalid host: {value!r}")

    if port_text and (not port_text.isascii() or not port_text.isdigit() or int(port_text) > 65535):
        raise ValueError(f"invalid port: {value!r}")

    if scheme not in SPECIAL_SCHEMES:
        return host
    if not host.isascii():
        host = host.encode("idna").decode("ascii")
    host = host.lower()
    if scheme == "file" and host == "localhost":
        return ""
    if scheme != "file" and not host:
        raise ValueError(f"missing host: {value!r}")
    return host


def is_valid_url(value: str) -> bool:
    try:
        url_host(value)
    except ValueError:
        return False
    return True


def is_valid_platform(platform: str) -> bool:
    return platform.lower() in PLATFORMS


def validate_invocation(url: str | None, platform: str) -> Invocation:
    if not url:
        raise UsageError("Please provide a URL to audit", show_usage=True)
    if not is_valid_url(url):
        raise UsageError("Invalid URL provided")
    if not is_valid_platform(platform):
        raise UsageError("Invalid platform. Use 'desktop' or 'mobile'")
    return Invocation(url=url.strip(), platform=platform.lower())


def resolve_profile(platform: str) -> PlatformProfile:
    return PROFILES[platform]


def report_timestamp(now: datetime | None = None) -> str:
    moment = now or datetime.now(UTC)
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    return moment.strftime("%Y-%m-%dT%H-%M-%S")


def report_domain(url: str) -> str:
    try:
        host = url_host(url)
    except ValueError:
        host = ""
    return re.sub(r"[^A-Za-z0-9]", "-", host)


def report_basename(domain: str, platform: str, timestamp: str) -> str:
    return f"{REPORT_PREFIX}-{domain}-{platform}-{timestamp}"


def write_html_report(html: str, base_path: Path) -> Path:
    html_path = base_path.with_name(f"{base_path.name}.html")
    html_path.write_text(html, encoding="utf-8")
    return html_path


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


@asynccontextmanager
async def audit_browser(port: int) -> AsyncIterator[AuditBrowser]:
    """Headless Chromium exposing a DevTools port; closed on every exit path."""
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(
            headless=True,
            args=[*AUDIT_CHROME_FLAGS, f"--remote-debugging-port={port}"],
        )
        try:
            yield AuditBrowser(port=port)
        finally:
            await browser.close()


def find_lighthouse_runner() -> list[str]:
    lighthouse = shutil.which("lighthouse")
    if lighthouse:
        return [lighthouse]
    npx = shutil.which("npx")
    if npx:
        return [npx, "--yes", "lighthouse"]
    return []


def lighthouse_command(
    runner: Sequence[str],
    url: str,
    profile: PlatformProfile,
    port: int,
    output_base: Path,
) -> list[str]:
    return [
        *runner,
        url,
        f"--port={port}",
        "--only-categories=accessibility",
        "--output=html",
        "--output=json",
        f"--output-path={output_base}",
        *profile.lighthouse_flags(),
    ]


def parse_lighthouse_result(html: str | None, lhr: Any) -> AuditResult:
    if not html or not isinstance(lhr, dict):
        raise AuditError(NO_RESULT_MESSAGE)
    runtime_error = lhr.get("runtimeError")
    if isinstance(runtime_error, dict) and runtime_error.get("code"):
        raise AuditError(f"{runtime_error.get('code')}: {runtime_error.get('message', '')}".strip())
    category = (lhr.get("categories") or {}).get("accessibility")
    if not isinstance(category, dict):
        raise AuditError(NO_RESULT_MESSAGE)
    score = category.get("score")
    audits = lhr.get("audits") or {}
    return AuditResult(
        html=html,
        score=float(score) if isinstance(score, (int, float)) else None,
        audits=dict(audits) if isinstance(audits, dict) else {},
    )


def _read_optional(path: Path) -> str | None:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


async def run_lighthouse(url: str, profile: PlatformProfile, port: int) -> AuditResult:
    runner = find_lighthouse_runner()
    if not runner:
        raise AuditError("Lighthouse CLI not found. Install with: npm install -g lighthouse")

    with tempfile.TemporaryDirectory(prefix="lighthouse-") as tmp:
        output_base = Path(tmp) / "lighthouse"
        cmd = lighthouse_command(runner, url, profile, port, output_base)
        proc = await asyncio.create_subprocess_exec(*cmd, stdout=asyncio.subprocess.DEVNULL)
        rc = await proc.wait()
        if rc != 0:
            raise AuditError(f"Lighthouse exited with code {rc}")

        html = _read_optional(output_base.with_name(f"{output_base.name}.report.html"))
        raw_json = _read_optional(output_base.with_name(f"{output_base.name}.report.json"))
        try:
            lhr = json.loads(raw_json) if raw_json else None
        except json.JSONDecodeError as exc:
            raise AuditError(f"Invalid Lighthouse JSON: {exc}") from exc
        return parse_lighthouse_result(html, lhr)


async def render_report_image(html: str, viewport: Viewport, output_path: Path) -> Path:
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=True, args=RENDER_CHROME_FLAGS)
        try:
            page = await browser.new_page(device_scale_factor=viewport.device_scale_factor)
            await page.set_content(html, wait_until="networkidle")
            # Fixed delay; the report has no reliable "rendered" signal.
            await page.wait_for_timeout(SETTLE_DELAY_MS)
            await page.set_viewport_size({"width": viewport.width, "height": viewport.height})
            await page.screenshot(
                path=str(output_path),
                type="jpeg",
                quality=JPEG_QUALITY,
                full_page=True,
            )
        finally:
            await browser.close()
    return output_path


def print_summary(invocation: Invocation, result: AuditResult) -> None:
    percent = result.score_percent
    print("\nAudit Summary:")
    print(f"   URL: {invocation.url}")
    print(f"   Platform: {invocation.platform}")
    if percent is None:
        print("   Accessibility Score: N/A")
    else:
        print(f"   Accessibility Score: {percent}/100")
    print(f"   Total Audits: {len(result.audits)}")
    failed = result.failed_audits
    if failed > 0:
        print(f"   Failed Audits: {failed}")
    print("\nAudit completed successfully!")


async def run_pipeline(invocation: Invocation, output_dir: Path = OUTPUT_DIR) -> Artifacts:
    profile = resolve_profile(invocation.platform)

    print("Launching Chrome...")
    async with audit_browser(free_port()) as browser:
        print("Running Lighthouse audit...")
        result = await run_lighthouse(invocation.url, profile, browser.port)

    base_path = output_dir / report_basename(
        report_domain(invocation.url),
        invocation.platform,
        report_timestamp(),
    )
    html_path = write_html_report(result.html, base_path)
    print(f"HTML report saved: {html_path}")

    print("Converting HTML report to JPG...")
    jpg_path = await render_report_image(
        result.html,
        profile.viewport,
        base_path.with_name(f"{base_path.name}.jpg"),
    )
    print(f"JPG image saved: {jpg_path}")

    print_summary(invocation, result)
    return Artifacts(html_report=html_path, jpg_report=jpg_path, result=result)


def _report_unhandled(context: dict[str, Any], sink: list[dict[str, Any]]) -> None:
    sink.append(context)
    detail = context.get("exception") or context.get("message", "unknown error")
    print(f"Error: unhandled exception in event loop: {detail}", file=sys.stderr)


async def _run_with_loop_guard(
    invocation: Invocation,
    output_dir: Path,
    unhandled: list[dict[str, Any]],
) -> Artifacts:
    loop = asyncio.get_running_loop()
    pipeline_task = asyncio.current_task()

    def handle(_loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        _report_unhandled(context, unhandled)
        if pipeline_task is not None and not pipeline_task.done():
            pipeline_task.cancel()

    loop.set_exception_handler(handle)
    return await run_pipeline(invocation, output_dir)


def run(argv: Sequence[str], output_dir: Path = OUTPUT_DIR) -> int:
    try:
        url, platform = parse_args(argv)
        invocation = validate_invocation(url, platform)
    except UsageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if exc.show_usage:
            for line in USAGE_LINES:
                print(line)
        return EXIT_FAILURE

    print(f"Starting Lighthouse accessibility audit for: {invocation.url}")
    print(f"Platform: {invocation.platform}")

    unhandled: list[dict[str, Any]] = []
    try:
        asyncio.run(_run_with_loop_guard(invocation, output_dir, unhandled))
    except asyncio.CancelledError:
        if not unhandled:
            raise
        return EXIT_FAILURE
    except Exception as exc:
        print(f"Error during audit: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    if unhandled:
        return EXIT_FAILURE
    return EXIT_OK


def main() -> int:
    return run(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
