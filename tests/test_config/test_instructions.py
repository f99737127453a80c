from pathlib import Path

import pytest

from shellpilot.instructions import InstructionLoader, build_agents_guidance, build_system_prompt, find_agent_files


def _loader(base: Path, personal: Path | None = None) -> InstructionLoader:
    return InstructionLoader(base_dir=base, personal_dir=personal or base / "personal")


def test_render_keeps_unknown_placeholders(tmp_path: Path):
    (tmp_path / "greeting.md").write_text("Hello {name}, see {missing}.\n", encoding="utf-8")
    assert _loader(tmp_path).render("greeting.md", name="Ada") == "Hello Ada, see {missing}."


def test_personal_override_wins(tmp_path: Path):
    personal = tmp_path / "personal"
    personal.mkdir()
    (tmp_path / "prompt.md").write_text("bundled", encoding="utf-8")
    (personal / "prompt.md").write_text("personal", encoding="utf-8")
    assert _loader(tmp_path, personal).load("prompt.md") == "personal"


def test_missing_template_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        _loader(tmp_path).load("nope.md")


def test_bundled_system_prompt_renders_protocol_example(tmp_path: Path):
    loader = InstructionLoader(personal_dir=tmp_path / "none")
    prompt = build_system_prompt(tmp_path, loader)
    assert f"Working directory: {tmp_path}" in prompt
    assert "{{" not in prompt
    assert '{"shell": "bash"' in prompt


def test_agents_files_are_discovered_and_appended(tmp_path: Path):
    (tmp_path / "AGENTS.md").write_text("Use make test.", encoding="utf-8")
    nested = tmp_path / "pkg"
    nested.mkdir()
    (nested / "AGENTS.md").write_text("Keep functions small.", encoding="utf-8")
    ignored = tmp_path / "node_modules"
    ignored.mkdir()
    (ignored / "AGENTS.md").write_text("ignore me", encoding="utf-8")

    assert [path.relative_to(tmp_path).as_posix() for path in find_agent_files(tmp_path)] == [
        "AGENTS.md",
        "pkg/AGENTS.md",
    ]
    guidance = build_agents_guidance(tmp_path)
    assert "File: AGENTS.md\nUse make test." in guidance
    assert "ignore me" not in guidance

    prompt = build_system_prompt(tmp_path, InstructionLoader(personal_dir=tmp_path / "none"))
    assert "Keep functions small." in prompt
