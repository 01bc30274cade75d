import pytest

from vkubelet.api.execopts import ExecOptions, StreamConfig, TermSize, get_exec_options, stream_config
from vkubelet.errdefs import InvalidInputError, is_invalid_input


def test_stdout_only():
    assert get_exec_options({"output": "1"}) == ExecOptions(stdout=True)


def test_list_values_and_tty():
    result = get_exec_options({"input": ["1"], "output": ["1"], "tty": ["1"]})
    assert result == ExecOptions(stdin=True, stdout=True, tty=True)


def test_values_other_than_one_are_false():
    assert get_exec_options({"output": "1", "input": "true"}) == ExecOptions(stdout=True)


def test_tty_with_stderr_rejected():
    with pytest.raises(InvalidInputError, match="cannot exec with tty and stderr"):
        get_exec_options({"tty": "1", "error": "1"})


def test_no_streams_rejected():
    with pytest.raises(InvalidInputError) as info:
        get_exec_options({"tty": "1"})
    assert str(info.value) == "you must specify at least one of stdin, stdout, stderr"
    assert is_invalid_input(info.value)


def test_stream_config_defaults():
    assert stream_config(0, 0) == StreamConfig(30.0, 30.0)


def test_stream_config_keeps_given_values():
    config = stream_config(5, 0)
    assert config.idle_timeout == 5
    assert config.creation_timeout == StreamConfig().creation_timeout


def test_term_size_fields():
    size = TermSize(width=80, height=24)
    assert (size.width, size.height) == (80, 24)