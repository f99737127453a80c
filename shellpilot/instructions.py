"""Load and render prompt templates shipped with the package.

Templates live in ``shellpilot/prompts``. A file with the same name in
``~/.shellpilot/instructions/`` takes precedence, so users can tune prompts
without touching the installed package.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping


_PERSONAL_DIR = Path("~/.shellpilot/instructions").expanduser()


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read templates, personal override first, then the bundled default."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = self._resolve_base_dir(base_dir)
        self.personal_dir = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("SHELLPILOT_INSTRUCTIONS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return (Path(__file__).resolve().parent / "prompts").resolve()

    def _path(self, name: str) -> Path:
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def load(self, name: str) -> str:
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(f"Instruction template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        """Render template with ``str.format`` placeholders; unknown keys stay as-is."""
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return self.load(name).format_map(_SafeFormatDict(values))


_SKIPPED_DIRS = {".git", "node_modules", ".venv", "__pycache__"}


def find_agent_files(root: Path | str) -> list[Path]:
    """Every ``AGENTS.md`` below ``root``, skipping VCS and dependency folders."""
    found: list[Path] = []
    for current, dirs, files in os.walk(Path(root)):
        dirs[:] = sorted(d for d in dirs if d not in _SKIPPED_DIRS)
        for name in sorted(files):
            if name.lower() == "agents.md":
                found.append(Path(current) / name)
    return found


def build_agents_guidance(root: Path | str) -> str:
    sections: list[str] = []
    for path in find_agent_files(root):
        try:
            content = path.read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if content:
            sections.append(f"File: {path.relative_to(root)}\n{content}")
    return "\n\n---\n\n".join(sections)


def build_system_prompt(
    root: Path | str | None = None,
    loader: InstructionLoader | None = None,
) -> str:
    """Base system prompt plus any workspace ``AGENTS.md`` rules."""
    workdir = Path(root or Path.cwd())
    loader = loader or InstructionLoader()
    prompt = loader.render("system_prompt.md", cwd=str(workdir))
    guidance = build_agents_guidance(workdir)
    if guidance.strip():
        prompt = f"{prompt}\n\n{loader.render('agents_guidance.md', guidance=guidance)}"
    return prompt
