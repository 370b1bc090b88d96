import pytest

from calibration_workflow import CalibrationWorkflow
from cli import EXIT_CANCELED, EXIT_ERROR, EXIT_OK, AutomationSession, build_parser, run
from profile_store import ProfileStore

from conftest import ScriptedPrompt, make_profile, sample_at_rel


class ScriptedSession(AutomationSession):
    """Session whose calibration prompt answers from a queue"""

    def __init__(self, settings, bridge, samples=()):
        super().__init__(settings, bridge)
        self.prompt = ScriptedPrompt(samples)

    def workflow(self):
        return CalibrationWorkflow(self.controller, self.launcher, self.store, self.prompt, self.settings)


def test_parser_commands():
    parser = build_parser()
    args = parser.parse_args(["capture", "--query", "best pizza", "--apps", "chrome,tiktok"])
    assert (args.command, args.query, args.apps, args.out) == ("capture", "best pizza", "chrome,tiktok", None)
    assert parser.parse_args(["calibrate-action", "chrome:ellipsis"]).key == "chrome:ellipsis"
    assert parser.parse_args(["point-check", "0.5", "0.91"]).ry == 0.91

    with pytest.raises(SystemExit):
        parser.parse_args(["capture", "--query", "x"])
    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_coord_to_rel(bridge, settings, capsys):
    assert run(["coord-to-rel", "300", "419"], ScriptedSession(settings, bridge)) == EXIT_OK
    assert capsys.readouterr().out.strip() == "0.500000 0.500000"


def test_point_check(bridge, settings, capsys):
    assert run(["point-check", "0.5", "0.91"], ScriptedSession(settings, bridge)) == EXIT_OK
    assert capsys.readouterr().out.strip() == "rel (0.5, 0.91) => abs (300, 641)"


def test_point_check_rejects_out_of_range(bridge, settings, capsys):
    assert run(["point-check", "1.5", "0.5"], ScriptedSession(settings, bridge)) == EXIT_ERROR
    assert "outside 0..1" in capsys.readouterr().err


def test_print_window(bridge, settings, capsys):
    assert run(["print-window"], ScriptedSession(settings, bridge)) == EXIT_OK
    out = capsys.readouterr().out
    assert "window: 100,100,500,700" in out
    assert "content: 110 148 380 542" in out


def test_missing_host_commands_exit_with_hint(bridge, settings, capsys):
    bridge.missing = ["cliclick (brew install cliclick)"]
    assert run(["print-window"], ScriptedSession(settings, bridge)) == EXIT_ERROR
    err = capsys.readouterr().err
    assert err.startswith("error: Missing required host commands: cliclick")
    assert "Hint: Install cliclick" in err


def test_capture_without_profile_points_to_calibrate(bridge, settings, capsys, tmp_path):
    code = run(
        ["capture", "--query", "pizza", "--apps", "instagram", "--out", str(tmp_path / "out")],
        ScriptedSession(settings, bridge),
    )
    assert code == EXIT_ERROR
    assert "mirror-autofill calibrate" in capsys.readouterr().err


def test_calibrate_action_prints_relative_point(bridge, settings, capsys):
    ProfileStore(settings.profile_path).persist(make_profile())
    session = ScriptedSession(settings, bridge, [sample_at_rel(0.25, 0.75)])

    assert run(["calibrate-action", "tiktok:searchIcon"], session) == EXIT_OK
    assert capsys.readouterr().out.strip() == "rel=0.250000,0.750000"


def test_canceled_calibration_exits_130(bridge, settings, capsys):
    assert run(["calibrate"], ScriptedSession(settings, bridge)) == EXIT_CANCELED
    assert "Canceled by user." in capsys.readouterr().err
    assert not settings.profile_path.exists()
