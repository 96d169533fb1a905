"""
Command profile detection for the openclaw binary.

The gateway CLI changed shape across releases:

    legacy:  openclaw gateway --port ...
    newer:   openclaw gateway run --port ...   (or: gateway start)

The installed binary is probed once through its --help output, and the
result is cached for the lifetime of the resolver.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

# Newest first; the last entry is the fallback when nothing else is recognized
CANDIDATE_SUBCOMMANDS: Tuple[Tuple[str, ...], ...] = (
    ("gateway", "run"),
    ("gateway", "start"),
    ("gateway",),
)

_UNSUPPORTED_RE = re.compile(
    r"unknown command|invalid command|unknown option|unknown arguments",
    re.IGNORECASE,
)

HELP_PROBE_TIMEOUT_SECONDS = 30.0

HelpProbe = Callable[[str, Tuple[str, ...]], Awaitable[Optional[str]]]


@dataclass(frozen=True)
class CommandProfile:
    subcommand: Tuple[str, ...]
    supports_port: bool = False
    supports_token: bool = False

    @property
    def mode(self) -> str:
        return " ".join(self.subcommand)

    def build_args(self, binary: str, port: int, token: Optional[str] = None) -> List[str]:
        """Build the launch argv, passing only flags this version accepts."""
        args = [binary, *self.subcommand]
        if self.supports_port:
            args += ["--port", str(port)]
        if token and self.supports_token:
            args += ["--token", token]
        return args


def is_supported_help(text: Optional[str]) -> bool:
    """A candidate is supported unless its help output is an unknown-command error."""
    if text is None:
        return False
    return not _UNSUPPORTED_RE.search(text)


def profile_from_help(subcommand: Tuple[str, ...], help_text: Optional[str]) -> CommandProfile:
    text = help_text or ""
    return CommandProfile(
        subcommand=tuple(subcommand),
        supports_port="--port" in text,
        supports_token="--token" in text,
    )


def select_profile(help_texts: Mapping[Tuple[str, ...], Optional[str]]) -> CommandProfile:
    """Pick the newest supported candidate from already collected help texts."""
    for subcommand in CANDIDATE_SUBCOMMANDS[:-1]:
        text = help_texts.get(subcommand)
        if is_supported_help(text):
            return profile_from_help(subcommand, text)
    base = CANDIDATE_SUBCOMMANDS[-1]
    return profile_from_help(base, help_texts.get(base))


async def read_help_text(
    binary: str,
    subcommand: Tuple[str, ...],
    timeout: float = HELP_PROBE_TIMEOUT_SECONDS,
) -> Optional[str]:
    """Return `<binary> <subcommand> --help` output (stdout+stderr), or None if it could not run."""
    try:
        proc = await asyncio.create_subprocess_exec(
            binary, *subcommand, "--help",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        logger.warning("Could not run %s %s --help: %s", binary, " ".join(subcommand), e)
        return None
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("%s %s --help timed out after %ss", binary, " ".join(subcommand), timeout)
        return None
    return (stdout or b"").decode("utf-8", errors="replace")


class CommandProfileResolver:
    """Probes the binary once and hands out the cached profile afterwards."""

    def __init__(self, probe: Optional[HelpProbe] = None):
        self._probe = probe or read_help_text
        self._profile: Optional[CommandProfile] = None
        self._lock = asyncio.Lock()

    @property
    def profile(self) -> Optional[CommandProfile]:
        return self._profile

    async def resolve(self, binary: str) -> CommandProfile:
        if self._profile is not None:
            return self._profile
        async with self._lock:
            if self._profile is None:
                self._profile = await self._detect(binary)
                logger.info("Detected gateway command mode: %s", self._profile.mode)
            return self._profile

    async def _detect(self, binary: str) -> CommandProfile:
        help_texts = {}
        for subcommand in CANDIDATE_SUBCOMMANDS:
            text = await self._probe(binary, subcommand)
            help_texts[subcommand] = text
            if subcommand != CANDIDATE_SUBCOMMANDS[-1] and is_supported_help(text):
                break
        return select_profile(help_texts)
