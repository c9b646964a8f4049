import pytest
from click.testing import CliRunner

from neverending.cli import cli
from neverending.models import Step


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, config, machine):
    def _invoke(*args):
        return runner.invoke(cli, list(args), obj={"config": config, "machine": machine})

    return _invoke


def test_cli_help(runner):
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    for command in ('create', 'start', 'feedback', 'status', 'chapters', 'resume', 'serve'):
        assert command in result.output


def test_create_and_status(invoke, machine):
    result = invoke('create', '--premise', 'A cartographer maps a city that moves.', '--no-voice-review')
    assert result.exit_code == 0
    (work,) = machine.store.list_works()
    work_id = work.id
    assert work_id in result.output
    assert work.config.voice_review is False
    assert work.config.character_ledger is True

    result = invoke('status', work_id)
    assert result.exit_code == 0
    assert 'outline_pending' in result.output


def test_start_follows_batch_to_checkpoint(invoke, make_work, machine):
    make_work("w1")
    result = invoke('start', 'w1')
    assert result.exit_code == 0
    assert 'awaiting_chapter_2_feedback' in result.output
    assert machine.get_status("w1").step is Step.AWAITING_CHAPTER_2


def test_start_detached_then_chapters(invoke, make_work, machine):
    make_work("w1")
    result = invoke('start', 'w1', '--detach')
    assert result.exit_code == 0
    assert machine.wait("w1", 10)

    result = invoke('chapters', 'w1')
    assert result.exit_code == 0
    assert 'Part 3' in result.output

    result = invoke('chapters', 'w1', '--full')
    assert 'Chapter 2 opens on the harbor.' in result.output


def test_feedback_command(invoke, make_work, machine):
    make_work("w1")
    invoke('start', 'w1', '--detach')
    machine.wait("w1", 10)

    result = invoke('feedback', 'w1', '--checkpoint', 'chapter_2', '--pacing', 'slow',
                    '--tone', 'right', '--character', 'warming', '--detach')
    assert result.exit_code == 0
    machine.wait("w1", 10)
    assert machine.get_status("w1").step is Step.AWAITING_CHAPTER_5


def test_feedback_rejects_unknown_values(invoke, make_work):
    make_work("w1")
    result = invoke('feedback', 'w1', '--checkpoint', 'chapter_2', '--pacing', 'glacial',
                    '--tone', 'right', '--character', 'love')
    assert result.exit_code == 2


def test_feedback_before_checkpoint_is_an_error(invoke, make_work):
    make_work("w1")
    result = invoke('feedback', 'w1', '--checkpoint', 'chapter_5', '--pacing', 'slow',
                    '--tone', 'right', '--character', 'love')
    assert result.exit_code == 1
    assert 'cannot move' in result.output


def test_missing_work_is_an_error(invoke):
    result = invoke('status', 'nope')
    assert result.exit_code == 1
    assert 'not found' in result.output


def test_resume_with_nothing_to_do(invoke):
    result = invoke('resume')
    assert result.exit_code == 0
