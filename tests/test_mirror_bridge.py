import asyncio
from collections import deque

import pytest
from PIL import Image

import mirror_bridge
from mirror_bridge import (
    CommandResult,
    MirrorBridge,
    escape_applescript,
    escape_cliclick_text,
    parse_mouse_location,
    split_bounds_payload,
)
from mirror_models import Region, WindowBounds
from utils.error_handler import HostCommandError


class ScriptedBridge(MirrorBridge):
    """MirrorBridge with canned command results instead of subprocesses"""

    def __init__(self, results=()):
        super().__init__()
        self.results = deque(results)
        self.calls = []

    async def _run(self, command, *args):
        self.calls.append((command, *args))
        result = self.results.popleft()
        if callable(result):
            return result(command, *args)
        return result


def ok(output=""):
    return CommandResult(0, output)


def failed(output="execution error"):
    return CommandResult(1, output)


@pytest.mark.parametrize("raw,expected", [
    ("{412, 380}", (412.0, 380.0)),
    ("412,380\n", (412.0, 380.0)),
    ("x: 12.5, y: -3", (12.5, -3.0)),
])
def test_parse_mouse_location(raw, expected):
    assert parse_mouse_location(raw) == expected


def test_parse_mouse_location_rejects_garbage():
    with pytest.raises(ValueError):
        parse_mouse_location("no pointer")


def test_escaping():
    assert escape_cliclick_text("a,b:c\\") == "a\\,b\\:c\\\\"
    assert escape_applescript('say "hi"\\') == 'say \\"hi\\"\\\\'


def test_split_bounds_payload():
    assert split_bounds_payload("MODE=front-bounds|1,2,3,4") == ("front-bounds", "1,2,3,4")
    assert split_bounds_payload("1,2,3,4") == ("", "1,2,3,4")


def test_missing_commands_lists_install_hints(monkeypatch):
    monkeypatch.setattr(mirror_bridge.shutil, "which", lambda name: None if name == "cliclick" else "/usr/bin/" + name)
    assert MirrorBridge.missing_commands() == ["cliclick (brew install cliclick)"]


def test_window_bounds_uses_first_usable_candidate():
    bridge = ScriptedBridge([ok("NOAPP"), ok("MODE=front-bounds|100,100,500,700")])
    bounds = asyncio.run(bridge.query_window_bounds(["iPhone Mirroring", "QuickTime Player"]))
    assert bounds == WindowBounds(x1=100, y1=100, x2=500, y2=700)
    assert len(bridge.calls) == 2


def test_window_bounds_skips_failing_candidates_and_probes_frontmost():
    bridge = ScriptedBridge([
        failed(),
        ok("MODE=front-bounds|500,100,100,700"),
        ok("FRONT=Simulator|MODE=front-possize|0,0,200,400"),
    ])
    bounds = asyncio.run(bridge.query_window_bounds(["iPhone Mirroring", "QuickTime Player"]))
    assert bounds == WindowBounds(x1=0, y1=0, x2=200, y2=400)


def test_window_bounds_none_when_nothing_answers():
    bridge = ScriptedBridge([ok("NOWINDOW"), ok("NOWINDOW")])
    assert asyncio.run(bridge.query_window_bounds(["iPhone Mirroring"])) is None


def test_frontmost_window_without_bounds():
    bridge = ScriptedBridge([ok("FRONT=Finder|NOBOUNDS")])
    assert asyncio.run(bridge.query_frontmost_window_bounds()) == ("Finder", None)


def test_frontmost_process_unknown_on_failure():
    bridge = ScriptedBridge([failed()])
    assert asyncio.run(bridge.get_frontmost_process_name()) == "unknown"


def test_mouse_location_falls_back_to_cliclick():
    bridge = ScriptedBridge([failed(), ok("412,380\n")])
    sample = asyncio.run(bridge.query_mouse_location())
    assert (sample.x, sample.y, sample.source) == (412.0, 380.0, "cliclick")
    assert bridge.calls[1] == ("cliclick", "p")


def test_mouse_location_fails_when_both_sources_fail():
    bridge = ScriptedBridge([ok("garbage"), failed("no permission")])
    with pytest.raises(HostCommandError):
        asyncio.run(bridge.query_mouse_location())


def test_keystroke_scripts():
    bridge = ScriptedBridge([ok(), ok(), ok()])
    assert asyncio.run(bridge.send_keystroke("3", ["command"]))
    assert asyncio.run(bridge.send_keystroke("return"))
    assert asyncio.run(bridge.send_keystroke('"'))

    scripts = [call[2] for call in bridge.calls]
    assert scripts[0] == 'tell application "System Events" to keystroke "3" using {command down}'
    assert scripts[1] == 'tell application "System Events" to key code 36'
    assert scripts[2] == 'tell application "System Events" to keystroke "\\""'


def test_keystroke_failure_returns_false():
    bridge = ScriptedBridge([failed()])
    assert asyncio.run(bridge.send_keystroke("1", ["cmd"])) is False


@pytest.mark.parametrize("key,modifiers", [("a", ["hyper"]), ("return", ["command"])])
def test_keystroke_rejects_bad_modifiers(key, modifiers):
    with pytest.raises(ValueError):
        asyncio.run(ScriptedBridge().send_keystroke(key, modifiers))


def test_pointer_and_typing_payloads():
    bridge = ScriptedBridge([ok(), ok(), ok(), ok()])
    asyncio.run(bridge.click_at(300, 641))
    asyncio.run(bridge.drag_from(300, 668, 300, 446))
    asyncio.run(bridge.type_character(","))
    asyncio.run(bridge.press_key("delete"))
    assert bridge.calls == [
        ("cliclick", "c:300,641"),
        ("cliclick", "dd:300,668", "m:300,446", "du:300,446"),
        ("cliclick", "t:\\,"),
        ("cliclick", "kp:delete"),
    ]


def test_cliclick_failure_raises():
    bridge = ScriptedBridge([failed("Accessibility privileges not enabled")])
    with pytest.raises(HostCommandError) as excinfo:
        asyncio.run(bridge.click_at(1, 2))
    assert excinfo.value.details["command"] == "cliclick"


def test_capture_region_writes_png(tmp_path):
    def screencapture(command, *args):
        Image.new("RGB", (380, 542)).save(args[-1])
        return ok()

    bridge = ScriptedBridge([screencapture])
    out = tmp_path / "shots" / "content.png"
    size = asyncio.run(bridge.capture_region(Region(x=110, y=148, width=380, height=542), out))

    assert size == (380, 542)
    assert bridge.calls[0][:4] == ("screencapture", "-x", "-R", "110,148,380,542")


def test_capture_region_failure(tmp_path):
    bridge = ScriptedBridge([failed("could not create image")])
    with pytest.raises(HostCommandError):
        asyncio.run(bridge.capture_region(Region(x=0, y=0, width=10, height=10), tmp_path / "x.png"))


def test_capture_region_rejects_unreadable_image(tmp_path):
    def screencapture(command, *args):
        with open(args[-1], "wb") as f:
            f.write(b"not an image")
        return ok()

    bridge = ScriptedBridge([screencapture])
    with pytest.raises(HostCommandError):
        asyncio.run(bridge.capture_region(Region(x=0, y=0, width=10, height=10), tmp_path / "x.png"))
