"""POSIX shell bundle toolchain.

Compiles ``*.sh`` units (syntax-checked with ``sh -n``) and links them, with
their locked dependencies, into one self-contained executable. The bundle
runs ``<entry> "$@"`` normally and supports a ``--prepare`` self-warm mode
that calls an optional ``prepare`` function and records a marker under
``$HOME/.cache/<name>``.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass

from kiln.builders.base import LinkRequest, SourceUnit
from kiln.errors import CompileError

PREPARE_FLAG = "--prepare"


@dataclass(slots=True)
class ShellBundleBuilder:
    name: str = "shell-bundle"
    version: str = "1"
    suffix: str = ".sh"
    shell: str = "sh"

    def compile_unit(self, unit: SourceUnit) -> bytes:
        try:
            text = unit.source.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CompileError(
                "Source unit is not valid UTF-8.",
                context={"unit": unit.path},
            ) from exc
        text = text.replace("\r\n", "\n")
        if not text.endswith("\n"):
            text += "\n"
        self._syntax_check(unit.path, text)
        return f"# unit: {unit.path}\n{text}".encode()

    def link(self, request: LinkRequest) -> bytes:
        manifest = request.manifest
        entry_pattern = re.compile(rf"^\s*{re.escape(manifest.entry)}\s*\(\)", re.MULTILINE)
        if not any(entry_pattern.search(obj.payload.decode("utf-8")) for obj in request.objects):
            raise CompileError(
                "Entry function is not defined by any source unit.",
                hint=f"Define `{manifest.entry}() {{ ... }}` in a unit under {manifest.sources}/.",
                context={"project": manifest.name, "entry": manifest.entry},
            )

        body_parts: list[str] = []
        for dependency in request.dependencies:
            for file_name, payload in dependency.files:
                body_parts.append(f"# dependency: {dependency.ident} {file_name}\n")
                body_parts.append(_as_text(payload, origin=dependency.ident))
        for obj in request.objects:
            body_parts.append(obj.payload.decode("utf-8"))
        body = "".join(body_parts)

        signature = request.secret.sign(body.encode("utf-8")) if request.secret else ""
        warm_dir = f'"${{HOME}}/.cache/{manifest.name}"'
        script = (
            "#!/bin/sh\n"
            f"# kiln bundle: {manifest.name} {manifest.version} ({self.name} {self.version})\n"
            "set -eu\n"
            f"KILN_PROJECT='{manifest.name}'\n"
            f"KILN_VERSION='{manifest.version}'\n"
            f"KILN_SIGNATURE='{signature}'\n"
            f"{body}"
            "# entry\n"
            f'if [ "${{1:-}}" = "{PREPARE_FLAG}" ]; then\n'
            "  if command -v prepare >/dev/null 2>&1; then prepare; fi\n"
            f"  mkdir -p {warm_dir}\n"
            f"  printf '%s\\n' \"$KILN_PROJECT $KILN_VERSION\" > {warm_dir}/prepared\n"
            "  exit 0\n"
            "fi\n"
            f'{manifest.entry} "$@"\n'
        )
        self._syntax_check("<bundle>", script)
        return script.encode("utf-8")

    def _syntax_check(self, unit: str, text: str) -> None:
        try:
            completed = subprocess.run(
                [self.shell, "-n"],
                input=text,
                text=True,
                capture_output=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CompileError(
                "Toolchain shell is not installed.",
                hint="Install a POSIX shell or configure ShellBundleBuilder(shell=...).",
                context={"shell": self.shell},
            ) from exc
        if completed.returncode != 0:
            raise CompileError(
                "Source unit failed to compile.",
                context={
                    "unit": unit,
                    "returncode": str(completed.returncode),
                    "stderr": completed.stderr.strip()[:2000],
                },
            )


def _as_text(payload: bytes, *, origin: str) -> str:
    try:
        text = payload.decode("utf-8").replace("\r\n", "\n")
    except UnicodeDecodeError as exc:
        raise CompileError(
            "Dependency payload is not valid UTF-8.",
            context={"dependency": origin},
        ) from exc
    return text if text.endswith("\n") else text + "\n"
