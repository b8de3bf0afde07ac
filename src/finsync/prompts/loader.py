from __future__ import annotations

from pathlib import Path
import re

from promptorium import load_prompt as promptorium_load_prompt


class PromptLoadError(Exception):
    """Raised when a prompt cannot be loaded from any configured source."""


_VERSIONED_PROMPT_PATTERN = re.compile(r"^(?P<key>.+)-(?P<version>\d+)\.md$")
_PLACEHOLDER_PATTERN = re.compile(r"\{\{(?P<name>[A-Z0-9_]+)\}\}")


def load_finsync_prompt(prompt_key: str) -> str:
    """Load a prompt by key via Promptorium, falling back to the bundled copy."""
    promptorium_error: Exception | None = None

    try:
        prompt = promptorium_load_prompt(prompt_key)
        if isinstance(prompt, str):
            return prompt
        raise PromptLoadError(
            f"Prompt {prompt_key!r} did not return text; got {type(prompt).__name__}"
        )
    except Exception as error:  # noqa: BLE001
        promptorium_error = error

    bundled_prompt = _load_latest_bundled_prompt(prompt_key)
    if bundled_prompt is not None:
        return bundled_prompt

    raise PromptLoadError(f"Prompt not found: {prompt_key}") from promptorium_error


def render_prompt(template: str, **values: str) -> str:
    """Substitute ``{{NAME}}`` placeholders.

    Raises:
        PromptLoadError: A placeholder in the template has no value
    """
    missing = {
        match.group("name")
        for match in _PLACEHOLDER_PATTERN.finditer(template)
        if match.group("name") not in values
    }
    if missing:
        raise PromptLoadError(f"Missing prompt values: {sorted(missing)}")
    return _PLACEHOLDER_PATTERN.sub(lambda m: values[m.group("name")], template)


def _load_latest_bundled_prompt(prompt_key: str) -> str | None:
    prompt_dir = Path(__file__).resolve().parent / prompt_key
    if not prompt_dir.is_dir():
        return None

    versions: dict[int, Path] = {}
    for path in prompt_dir.glob(f"{prompt_key}-*.md"):
        match = _VERSIONED_PROMPT_PATTERN.match(path.name)
        if match and match.group("key") == prompt_key:
            versions[int(match.group("version"))] = path

    if not versions:
        return None
    return versions[max(versions)].read_text(encoding="utf-8")
