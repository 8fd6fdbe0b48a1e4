"""Threat scanning capability.

The intake pipeline consumes a scanner through the ThreatScanner protocol;
it is not a malware engine itself. Implementations:
- SignatureScanner: built-in checks for test signatures, executables and
  active content embedded in PDFs
- ClamdScanner: delegates to a clamd daemon using the INSTREAM command
- CompositeScanner: runs several scanners concurrently; any dirty verdict wins

Example:
    scanner = CompositeScanner([SignatureScanner(), ClamdScanner("clamav", 3310)])
    result = await scanner.scan(data)
    if not result.clean:
        print(result.threats)
"""

from __future__ import annotations

import asyncio
import logging
import re
import struct
from dataclasses import dataclass, field
from typing import Any, Protocol

from docintake.services.errors import ScanUnavailableError

logger = logging.getLogger(__name__)

# Industry standard anti-malware test string
EICAR_SIGNATURE = rb"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"

# PDF name objects that trigger code execution or carry payloads
PDF_ACTIVE_CONTENT = {
    "PDF.JavaScript": re.compile(rb"/(?:JavaScript|JS)\b"),
    "PDF.Launch": re.compile(rb"/Launch\b"),
    "PDF.EmbeddedFile": re.compile(rb"/EmbeddedFile\b"),
}

# clamd streams are sent in chunks no larger than this
CLAMD_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True, slots=True)
class ScanResult:
    """Verdict of a threat scan.

    Attributes:
        clean: True when no threat was found.
        threats: Names of detected threats.
        scanner: Name of the scanner that produced the verdict.
        details: Scanner-specific diagnostics.
    """

    clean: bool
    threats: list[str] = field(default_factory=list)
    scanner: str = "unknown"
    details: dict[str, Any] = field(default_factory=dict)


class ThreatScanner(Protocol):
    """Capability that inspects raw bytes for threats."""

    name: str

    async def scan(self, data: bytes) -> ScanResult:
        """Scan the bytes and return a verdict."""
        ...


class SignatureScanner:
    """Built-in scanner for well-known signatures.

    Detects the EICAR test file, Windows and Linux executables disguised as
    documents, and PDFs carrying JavaScript, launch actions or embedded files.
    """

    name = "signature"

    async def scan(self, data: bytes) -> ScanResult:
        threats: list[str] = []

        if EICAR_SIGNATURE in data:
            threats.append("EICAR-Test-Signature")
        if data.startswith(b"MZ"):
            threats.append("Executable.PE")
        if data.startswith(b"\x7fELF"):
            threats.append("Executable.ELF")
        if data.startswith(b"%PDF-"):
            threats.extend(
                name for name, pattern in PDF_ACTIVE_CONTENT.items() if pattern.search(data)
            )

        return ScanResult(
            clean=not threats,
            threats=threats,
            scanner=self.name,
            details={"bytes_scanned": len(data)},
        )


class ClamdScanner:
    """Scanner backed by a clamd daemon over TCP."""

    name = "clamd"

    def __init__(self, host: str, port: int = 3310, *, timeout: float = 30.0) -> None:
        """Initialize the clamd client.

        Args:
            host: clamd hostname.
            port: clamd TCP port.
            timeout: Seconds allowed for connect, upload and verdict.
        """
        self._host = host
        self._port = port
        self._timeout = timeout

    async def scan(self, data: bytes) -> ScanResult:
        response = await asyncio.wait_for(self._instream(data), timeout=self._timeout)
        return self.parse_response(response)

    async def _instream(self, data: bytes) -> str:
        reader, writer = await asyncio.open_connection(self._host, self._port)
        try:
            writer.write(b"zINSTREAM\0")
            for offset in range(0, len(data), CLAMD_CHUNK_SIZE):
                chunk = data[offset : offset + CLAMD_CHUNK_SIZE]
                writer.write(struct.pack("!L", len(chunk)) + chunk)
                await writer.drain()
            writer.write(struct.pack("!L", 0))
            await writer.drain()
            response = await reader.readuntil(b"\0")
        finally:
            writer.close()
            await writer.wait_closed()
        return response.rstrip(b"\0").decode("utf-8", errors="replace")

    def parse_response(self, response: str) -> ScanResult:
        """Turn a clamd reply ("stream: OK" / "stream: X FOUND") into a verdict.

        Raises:
            ScanUnavailableError: If clamd reported an error.
        """
        _, _, verdict = response.partition(": ")
        if verdict == "OK":
            return ScanResult(clean=True, scanner=self.name, details={"response": response})
        if verdict.endswith(" FOUND"):
            return ScanResult(
                clean=False,
                threats=[verdict.removesuffix(" FOUND")],
                scanner=self.name,
                details={"response": response},
            )
        raise ScanUnavailableError(f"clamd error: {response}")


class CompositeScanner:
    """Runs several scanners and merges their verdicts.

    Any dirty verdict makes the result dirty, with the union of threats.
    Scanners that fail are logged; if all of them fail the content cannot be
    confirmed clean and ScanUnavailableError is raised.
    """

    name = "composite"

    def __init__(self, scanners: list[ThreatScanner]) -> None:
        if not scanners:
            msg = "CompositeScanner needs at least one scanner"
            raise ValueError(msg)
        self._scanners = list(scanners)

    async def scan(self, data: bytes) -> ScanResult:
        outcomes = await asyncio.gather(
            *(scanner.scan(data) for scanner in self._scanners),
            return_exceptions=True,
        )

        verdicts: list[ScanResult] = []
        for scanner, outcome in zip(self._scanners, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning("Scanner %s failed: %s", scanner.name, outcome)
                continue
            verdicts.append(outcome)

        if not verdicts:
            raise ScanUnavailableError("No scanner produced a verdict")

        threats: list[str] = []
        for verdict in verdicts:
            threats.extend(t for t in verdict.threats if t not in threats)
        clean = all(verdict.clean for verdict in verdicts) and not threats

        return ScanResult(
            clean=clean,
            threats=threats,
            scanner=self.name,
            details={
                "scanners": [verdict.scanner for verdict in verdicts],
                "failed_scanners": len(self._scanners) - len(verdicts),
            },
        )
