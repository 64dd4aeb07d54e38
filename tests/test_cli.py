import io
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import repatched
from repatched import (
    ApplyPatch,
    Invocation,
    MakePatch,
    PatchToLive,
    SetupWorkspace,
    Unpatch,
    parse_invocation,
)


class ParseInvocationTests(unittest.TestCase):
    def test_commands_and_aliases(self) -> None:
        cases = [
            (["setup-workspace", "ws"], SetupWorkspace(Path("ws"))),
            (["sw", "ws"], SetupWorkspace(Path("ws"))),
            (["patch-to-live", "ws"], PatchToLive(Path("ws"))),
            (["ptl", "ws"], PatchToLive(Path("ws"))),
            (["unpatch"], Unpatch()),
            (["up"], Unpatch()),
            (["make-patch", "ws", "out.patch"], MakePatch(Path("ws"), Path("out.patch"))),
            (["mp", "ws", "out.patch"], MakePatch(Path("ws"), Path("out.patch"))),
            (["apply-patch", "in.patch"], ApplyPatch(Path("in.patch"), None)),
            (["ap", "in.patch", "-w", "ws"], ApplyPatch(Path("in.patch"), Path("ws"))),
            (["ap", "in.patch", "--workspace", "ws"], ApplyPatch(Path("in.patch"), Path("ws"))),
        ]
        for argv, expected in cases:
            with self.subTest(argv=argv):
                self.assertEqual(parse_invocation(argv), Invocation(action=expected))

    def test_global_options(self) -> None:
        invocation = parse_invocation(["-d", "/opt/discord", "-v", "up"])
        self.assertEqual(invocation.discord, Path("/opt/discord"))
        self.assertTrue(invocation.verbose)
        self.assertEqual(invocation.action, Unpatch())

    def test_no_action_exits_with_usage(self) -> None:
        with mock.patch("sys.stderr", new_callable=io.StringIO) as stderr:
            with self.assertRaises(SystemExit) as ctx:
                parse_invocation([])
        self.assertEqual(ctx.exception.code, "No action selected, use --help to get help")
        self.assertIn("usage:", stderr.getvalue())


class MainTests(unittest.TestCase):
    def setUp(self) -> None:
        patcher = mock.patch.object(repatched, "_setup_logger")
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_errors_exit_non_zero(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            missing = Path(tmpdir) / "missing"
            with self.assertLogs("repatched", level="ERROR") as logs:
                with self.assertRaises(SystemExit) as ctx:
                    repatched.main(["-d", str(missing), "unpatch"])
        self.assertEqual(ctx.exception.code, 1)
        self.assertIn("does not exist", logs.output[0])

    def test_worker_receives_the_parsed_action(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch.object(repatched, "Worker") as worker_cls:
                with self.assertLogs("repatched", level="INFO"):
                    repatched.main(["--discord", tmpdir, "sw", "ws"])
        worker_cls.assert_called_once_with(Path(tmpdir))
        worker_cls.return_value.run.assert_called_once_with(SetupWorkspace(Path("ws")))


if __name__ == "__main__":
    unittest.main()
