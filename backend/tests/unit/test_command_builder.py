"""
Unit tests for the recorder invocation builder.
"""
from unittest.mock import patch

import pytest

from recorder.command_builder import (
    DEFAULT_ARGS_TEMPLATE,
    RecorderCommandBuilder,
    validate_args_template,
)
from recorder.errors import ConfigurationError


URL = "http://iptv.example.com:8080/live/user/pass/101.ts"


class TestValidateArgsTemplate:
    def test_default_template_is_valid(self):
        assert validate_args_template(DEFAULT_ARGS_TEMPLATE) == []

    def test_missing_placeholders(self):
        problems = validate_args_template("-c copy out.ts")
        assert any("{url}" in p for p in problems)
        assert any("{output}" in p for p in problems)

    def test_empty_template(self):
        assert validate_args_template("   ") == ["Recorder argument template is empty"]

    def test_unbalanced_quotes(self):
        problems = validate_args_template('-i "{url} -f mpegts "{output}"')
        assert any("cannot be parsed" in p for p in problems)


class TestBuild:
    def test_default_invocation(self):
        builder = RecorderCommandBuilder("/usr/bin/ffmpeg")
        command = builder.build(URL, "News", "/rec/News.ts")
        assert command == ["/usr/bin/ffmpeg", "-i", URL, "-c", "copy", "-f", "mpegts", "/rec/News.ts"]

    def test_paths_with_spaces_stay_single_arguments(self):
        builder = RecorderCommandBuilder("ffmpeg")
        command = builder.build(URL, "News", "/my recordings/Evening News.ts")
        assert command[-1] == "/my recordings/Evening News.ts"

    def test_per_recording_template_overrides_default(self):
        builder = RecorderCommandBuilder("ffmpeg")
        command = builder.build(URL, "News", "/rec/a.ts", args_template='-y -i "{url}" -metadata title="{title}" "{output}"')
        assert command == ["ffmpeg", "-y", "-i", URL, "-metadata", "title=News", "/rec/a.ts"]

    def test_missing_stream_url(self):
        with pytest.raises(ConfigurationError):
            RecorderCommandBuilder("ffmpeg").build("", "News", "/rec/a.ts")

    def test_invalid_template(self):
        with pytest.raises(ConfigurationError):
            RecorderCommandBuilder("ffmpeg").build(URL, "News", "/rec/a.ts", args_template="-c copy")


class TestResolveBinary:
    def test_explicit_path_returned(self):
        assert RecorderCommandBuilder("/opt/ffmpeg/bin/ffmpeg").resolve_binary() == "/opt/ffmpeg/bin/ffmpeg"

    @patch("recorder.command_builder.shutil.which", return_value="/usr/local/bin/ffmpeg")
    def test_falls_back_to_path_lookup(self, mock_which):
        assert RecorderCommandBuilder("").resolve_binary() == "/usr/local/bin/ffmpeg"
        mock_which.assert_called_once_with("ffmpeg")

    @patch("recorder.command_builder.shutil.which", return_value=None)
    def test_no_binary_is_configuration_error(self, mock_which):
        with pytest.raises(ConfigurationError):
            RecorderCommandBuilder("").build(URL, "News", "/rec/a.ts")
