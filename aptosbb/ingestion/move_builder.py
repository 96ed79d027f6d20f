"""Move package builder backed by the ``aptos`` CLI."""

from __future__ import annotations

import json
import logging
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from aptosbb.core.config import get_settings
from aptosbb.core.errors import BuildError
from aptosbb.executor.resources import PackageMetadata

logger = logging.getLogger(__name__)


@dataclass
class BuildOptions:
    """What the compiler should emit alongside the bytecode."""

    with_srcs: bool = True
    with_abis: bool = True
    with_source_maps: bool = True
    with_error_map: bool = True
    named_addresses: dict[str, str] = field(default_factory=dict)
    skip_fetch_latest_git_deps: bool = True

    @property
    def included_artifacts(self) -> str:
        if self.with_srcs and self.with_source_maps:
            return "all"
        if self.with_abis or self.with_error_map:
            return "sparse"
        return "none"


@dataclass
class BuiltPackage:
    """Bytecode and serialized metadata of a compiled package."""

    package_dir: Path
    metadata_bytes: bytes
    modules: list[bytes] = field(default_factory=list)

    def extract_code(self) -> list[bytes]:
        return list(self.modules)

    def extract_metadata(self) -> PackageMetadata:
        return PackageMetadata.from_bytes(self.metadata_bytes)

    @property
    def name(self) -> str:
        return self.extract_metadata().name


def _hex_to_bytes(value: Any) -> bytes:
    if not isinstance(value, str):
        raise ValueError(f"expected a hex string, got {type(value).__name__}")
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def parse_publish_payload(payload: dict[str, Any], package_dir: Path) -> BuiltPackage:
    """Turn the CLI's ``publish_package_txn`` JSON into a ``BuiltPackage``."""
    try:
        metadata_arg, code_arg = payload["args"]
        return BuiltPackage(
            package_dir=package_dir,
            metadata_bytes=_hex_to_bytes(metadata_arg["value"]),
            modules=[_hex_to_bytes(module) for module in code_arg["value"]],
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise BuildError(f"Malformed publish payload for {package_dir}: {exc}", str(package_dir)) from exc


class MovePackageBuilder:
    """Compile Move packages with ``aptos move build-publish-payload``."""

    def __init__(self, cli_path: str | None = None, timeout: int | None = None) -> None:
        settings = get_settings()
        self.cli_path = cli_path or settings.aptos_cli_path
        self.timeout = timeout if timeout is not None else settings.build_timeout_seconds

    def build(self, package_dir: str | Path, options: BuildOptions | None = None) -> BuiltPackage:
        """Build the package at ``package_dir``.

        Raises:
            BuildError: the package is missing, does not compile, or the CLI
                could not be run.
        """
        options = options or BuildOptions()
        package_dir = Path(package_dir)
        if not (package_dir / "Move.toml").is_file():
            raise BuildError(f"No Move.toml in {package_dir}", str(package_dir))

        with tempfile.TemporaryDirectory(prefix="aptosbb-build-") as tmpdir:
            output_file = Path(tmpdir) / "publish_payload.json"
            cmd = self._build_cmd(package_dir, output_file, options)
            logger.debug("Running %s", " ".join(cmd))

            try:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except FileNotFoundError as exc:
                raise BuildError(f"aptos CLI not found at '{self.cli_path}'", str(package_dir)) from exc
            except subprocess.TimeoutExpired as exc:
                raise BuildError(
                    f"Build of {package_dir} timed out after {self.timeout}s", str(package_dir)
                ) from exc

            if result.returncode != 0:
                raise BuildError(
                    f"Build of {package_dir} failed with exit code {result.returncode}",
                    str(package_dir),
                    stderr=result.stderr,
                )

            try:
                payload = json.loads(output_file.read_text())
            except (OSError, json.JSONDecodeError) as exc:
                raise BuildError(f"Could not read build output for {package_dir}: {exc}", str(package_dir)) from exc

        package = parse_publish_payload(payload, package_dir)
        logger.info("Built %s: %d modules", package_dir, len(package.modules))
        return package

    def _build_cmd(self, package_dir: Path, output_file: Path, options: BuildOptions) -> list[str]:
        cmd = [
            self.cli_path,
            "move",
            "build-publish-payload",
            "--package-dir",
            str(package_dir),
            "--json-output-file",
            str(output_file),
            "--included-artifacts",
            options.included_artifacts,
            "--assume-yes",
        ]
        if options.named_addresses:
            cmd += [
                "--named-addresses",
                ",".join(f"{name}={addr}" for name, addr in sorted(options.named_addresses.items())),
            ]
        if options.skip_fetch_latest_git_deps:
            cmd.append("--skip-fetch-latest-git-deps")
        return cmd
