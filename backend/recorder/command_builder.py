"""Recorder invocation builder.

Turns a stream URL, a title and an output path into the argument list for the
external recorder (ffmpeg by default) using a configurable argument template.
"""
import os
import shlex
import shutil
from typing import List, Optional

from recorder.errors import ConfigurationError

DEFAULT_RECORDER_BINARY = "ffmpeg"
DEFAULT_ARGS_TEMPLATE = '-i "{url}" -c copy -f mpegts "{output}"'

REQUIRED_PLACEHOLDERS = ("{url}", "{output}")


def validate_args_template(template: str) -> List[str]:
    """Return a list of problems with an argument template (empty when valid)."""
    errors = []
    if not template or not template.strip():
        errors.append("Recorder argument template is empty")
        return errors
    for placeholder in REQUIRED_PLACEHOLDERS:
        if placeholder not in template:
            errors.append(f"Recorder argument template must contain {placeholder}")
    try:
        shlex.split(template, posix=True)
    except ValueError as e:
        errors.append(f"Recorder argument template cannot be parsed: {e}")
    return errors


class RecorderCommandBuilder:
    """Builds recorder command lines from a binary path and an argument template."""

    def __init__(self, binary_path: str = "", args_template: str = DEFAULT_ARGS_TEMPLATE):
        self.binary_path = binary_path
        self.args_template = args_template or DEFAULT_ARGS_TEMPLATE

    def resolve_binary(self) -> str:
        """
        Locate the recorder executable.

        An explicit path is returned as-is (existence is checked at launch).
        Without one, ``ffmpeg`` must be on PATH.

        Raises:
            ConfigurationError: If no recorder binary is configured or found.
        """
        if self.binary_path and self.binary_path.strip():
            return os.path.expanduser(self.binary_path.strip())
        found = shutil.which(DEFAULT_RECORDER_BINARY)
        if not found:
            raise ConfigurationError(
                "No recorder binary configured and ffmpeg was not found on PATH"
            )
        return found

    def build(
        self,
        stream_url: str,
        title: str,
        output_path: str,
        args_template: Optional[str] = None,
    ) -> List[str]:
        """
        Build the full recorder invocation.

        Placeholders are substituted per token after splitting the template,
        so URLs and paths with spaces stay single arguments.

        Raises:
            ConfigurationError: If the stream URL is missing, no binary is
                configured, or the template is invalid.
        """
        if not stream_url or not stream_url.strip():
            raise ConfigurationError(f"No stream URL available for '{title}'")

        template = args_template or self.args_template
        problems = validate_args_template(template)
        if problems:
            raise ConfigurationError("; ".join(problems))

        binary = self.resolve_binary()
        values = {"url": stream_url, "output": output_path, "title": title or ""}
        args = [_substitute(token, values) for token in shlex.split(template, posix=True)]
        return [binary, *args]


def _substitute(token: str, values: dict) -> str:
    for key, value in values.items():
        token = token.replace("{" + key + "}", value)
    return token
