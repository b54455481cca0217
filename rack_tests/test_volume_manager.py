# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Unit tests for the zfs CLI backed volume manager and the command runner beneath it; no zfs installation is needed."""

from __future__ import (
    annotations,
)
import subprocess
import unittest
from unittest.mock import (
    MagicMock,
    patch,
)

from rack_main.commands import (
    is_dataset_missing,
    run_command,
    try_command,
)
from rack_main.errors import (
    SnapshotConflict,
    VolumeManagerError,
    VolumeNotFound,
)
from rack_main.volume_manager import (
    ZfsVolumeManager,
    parse_zfs_get_output,
    parse_zfs_list_output,
)
from rack_main.volumes import (
    PropertyEntry,
    Provenance,
)
from rack_tests.abstract_testcase import (
    AbstractTestCase,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestParseZfsOutput,
        TestZfsVolumeManager,
        TestCommands,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def called_process_error(stderr: str) -> subprocess.CalledProcessError:
    return subprocess.CalledProcessError(1, ["zfs"], output="", stderr=stderr)


#############################################################################
class TestParseZfsOutput(unittest.TestCase):

    def test_parse_zfs_list_output(self) -> None:
        output = "tank/src\ntank/src@s1\ntank/src/a\n\ntank/src/a@s1\ntank/src@s2\n"
        datasets, snapshots = parse_zfs_list_output(output)
        self.assertEqual(["tank/src", "tank/src/a"], datasets)
        self.assertEqual(["tank/src@s1", "tank/src/a@s1", "tank/src@s2"], snapshots)

    def test_parse_zfs_get_output(self) -> None:
        output = (
            "tank/src\tcompression\tlz4\tlocal\n"
            "tank/src\tatime\toff\tinherited from tank\n"
            "tank/src\tchecksum\ton\tdefault\n"
            "tank/src\tcom.example:note\ta\tb\treceived\n"
            "tank/src\tmounted\tyes\t-\n"
            "tank/src@s1\tcompression\tlz4\tlocal\n"
            "tank/src/a\trecordsize\t4096\tlocal\n"
            "garbage line\n"
        )
        result = parse_zfs_get_output(output)
        self.assertEqual(
            [
                PropertyEntry("compression", "lz4", Provenance.LOCAL),
                PropertyEntry("atime", "off", Provenance.INHERITED),
                PropertyEntry("checksum", "on", Provenance.DEFAULT),
                PropertyEntry("com.example:note", "a\tb", Provenance.RECEIVED),
            ],
            result["tank/src"],
        )
        self.assertEqual([PropertyEntry("recordsize", "4096", Provenance.LOCAL)], result["tank/src/a"])
        self.assertEqual({"tank/src", "tank/src/a"}, set(result))


#############################################################################
class TestZfsVolumeManager(AbstractTestCase):

    def setUp(self) -> None:
        self.manager = self.make_manager()

    def make_manager(self, *cli_args: str) -> ZfsVolumeManager:
        args = self.argparser_parse_args(["--no-privilege-elevation", *cli_args, "snap", "tank"])
        return ZfsVolumeManager(self.make_params(args))

    def test_list_tree(self) -> None:
        names = "tank/src\ntank/src@s1\ntank/src/a\ntank/src/a@s1\n"
        props = "tank/src\tcompression\tlz4\tlocal\ntank/src/a\tcompression\tlz4\tinherited from tank/src\n"
        with patch("rack_main.volume_manager.try_command", return_value=names) as mock_try, patch(
            "rack_main.volume_manager.run_command", return_value=props
        ) as mock_run:
            tree = self.manager.list_tree("tank/src")
        self.assertEqual(
            ["zfs", "list", "-r", "-t", "filesystem,snapshot", "-Hp", "-o", "name", "-s", "createtxg", "tank/src"],
            mock_try.call_args[0][1],
        )
        get_cmd = mock_run.call_args[0][1]
        self.assertEqual(["zfs", "get", "-r", "-t", "filesystem"], get_cmd[:5])
        self.assertIn("local,inherited,received,default", get_cmd)
        self.assertEqual("tank/src", get_cmd[-1])
        self.assertEqual(["s1"], tree.snapshot_names())
        self.assertEqual(Provenance.LOCAL, tree.properties["compression"].provenance)
        self.assertEqual(Provenance.INHERITED, tree.children[0].properties["compression"].provenance)

    def test_list_tree_of_missing_volume(self) -> None:
        with patch("rack_main.volume_manager.try_command", return_value=None):
            with self.assertRaises(VolumeNotFound) as context:
                self.manager.list_tree("tank/nope")
        self.assertEqual("tank/nope", context.exception.path)

    def test_list_tree_failure(self) -> None:
        with patch("rack_main.volume_manager.try_command", side_effect=called_process_error("permission denied")):
            with self.assertRaises(VolumeManagerError) as context:
                self.manager.list_tree("tank/src")
        self.assertEqual("permission denied", context.exception.message)

    def test_exists(self) -> None:
        with patch("rack_main.volume_manager.try_command", return_value="tank/src\n"):
            self.assertTrue(self.manager.exists("tank/src"))
        with patch("rack_main.volume_manager.try_command", return_value=None):
            self.assertFalse(self.manager.exists("tank/nope"))

    def test_create_volume_and_set_property(self) -> None:
        with patch("rack_main.volume_manager.run_command", return_value="") as mock_run:
            self.manager.create_volume("backup/a")
            self.assertEqual(["zfs", "create", "-u", "backup/a"], mock_run.call_args[0][1])
            self.assertFalse(mock_run.call_args[1]["is_dry"])
            self.manager.set_property("backup/a", "compression", "lz4")
            self.assertEqual(["zfs", "set", "compression=lz4", "backup/a"], mock_run.call_args[0][1])

    def test_command_failure_becomes_volume_manager_error(self) -> None:
        error = called_process_error("cannot create 'backup/a/b': parent does not exist\n")
        with patch("rack_main.volume_manager.run_command", side_effect=error):
            with self.assertRaises(VolumeManagerError) as context:
                self.manager.create_volume("backup/a/b")
        self.assertEqual("backup/a/b", context.exception.path)
        self.assertEqual("cannot create 'backup/a/b': parent does not exist", context.exception.message)
        self.assertIs(error, context.exception.__cause__)

    def test_replicate_incrementally(self) -> None:
        with patch("rack_main.volume_manager.try_command", return_value=None), patch(
            "rack_main.volume_manager.run_command", return_value=""
        ) as mock_run:
            self.assertTrue(self.manager.replicate_snapshot("tank/a", "s2", "backup/a", base="s1"))
        self.assertEqual(
            ["sh", "-c", "zfs send -i tank/a@s1 tank/a@s2 | zfs receive -u backup/a"], mock_run.call_args[0][1]
        )

    def test_replicate_full(self) -> None:
        with patch("rack_main.volume_manager.try_command", return_value=None), patch(
            "rack_main.volume_manager.run_command", return_value=""
        ) as mock_run:
            self.assertTrue(self.manager.replicate_snapshot("tank/a", "s1", "backup/a", force=True))
        self.assertEqual(["sh", "-c", "zfs send tank/a@s1 | zfs receive -u -F backup/a"], mock_run.call_args[0][1])

    def test_replicate_full_without_force_never_overwrites(self) -> None:
        with patch("rack_main.volume_manager.try_command", return_value=None), patch(
            "rack_main.volume_manager.run_command", return_value=""
        ) as mock_run:
            self.assertTrue(self.manager.replicate_snapshot("tank/a", "s1", "backup/a"))
        self.assertEqual(["sh", "-c", "zfs send tank/a@s1 | zfs receive -u backup/a"], mock_run.call_args[0][1])

    def test_replicate_skips_identical_snapshot(self) -> None:
        with patch("rack_main.volume_manager.try_command", side_effect=["123\n", "123\n"]) as mock_try, patch(
            "rack_main.volume_manager.run_command"
        ) as mock_run:
            self.assertFalse(self.manager.replicate_snapshot("tank/a", "s1", "backup/a"))
        guid_cmd = ["zfs", "list", "-t", "snapshot", "-Hp", "-o", "guid"]
        self.assertEqual(guid_cmd + ["backup/a@s1"], mock_try.call_args_list[0][0][1])
        self.assertEqual(guid_cmd + ["tank/a@s1"], mock_try.call_args_list[1][0][1])
        mock_run.assert_not_called()

    def test_replicate_detects_conflicting_snapshot(self) -> None:
        with patch("rack_main.volume_manager.try_command", side_effect=["123\n", "456\n"]), patch(
            "rack_main.volume_manager.run_command"
        ) as mock_run:
            with self.assertRaises(SnapshotConflict) as context:
                self.manager.replicate_snapshot("tank/a", "s1", "backup/a")
        self.assertEqual("backup/a@s1", context.exception.path)
        mock_run.assert_not_called()

    def test_destroy_and_create_snapshot(self) -> None:
        with patch("rack_main.volume_manager.run_command", return_value="") as mock_run:
            self.manager.destroy_snapshot("tank/a", "s1")
            self.assertEqual(["zfs", "destroy", "tank/a@s1"], mock_run.call_args[0][1])
            self.manager.create_snapshot("tank/a", "s2")
            self.assertEqual(["zfs", "snapshot", "tank/a@s2"], mock_run.call_args[0][1])
            self.manager.create_snapshot("tank/a", "s3", recursive=True)
            self.assertEqual(["zfs", "snapshot", "-r", "tank/a@s3"], mock_run.call_args[0][1])

    def test_dry_run_is_passed_down(self) -> None:
        args = self.argparser_parse_args(["--no-privilege-elevation", "snap", "--dryrun", "tank"])
        manager = ZfsVolumeManager(self.make_params(args))
        with patch("rack_main.volume_manager.run_command", return_value="") as mock_run:
            manager.create_snapshot("tank", "s1")
        self.assertTrue(mock_run.call_args[1]["is_dry"])

    def test_privilege_elevation(self) -> None:
        args = self.argparser_parse_args(["--sudo-program", "doas", "snap", "tank"])
        with patch("rack_main.configuration.os.geteuid", return_value=1000):
            manager = ZfsVolumeManager(self.make_params(args))
        self.assertEqual(["doas", "-n", "zfs", "list"], manager.zfs("list"))
        with patch("rack_main.configuration.os.geteuid", return_value=0):
            manager = ZfsVolumeManager(self.make_params(args))
        self.assertEqual(["zfs", "list"], manager.zfs("list"))

    def test_custom_zfs_program(self) -> None:
        manager = self.make_manager("--zfs-program", "/sbin/zfs")
        self.assertEqual(["/sbin/zfs", "list"], manager.zfs("list"))


#############################################################################
class TestCommands(AbstractTestCase):

    def setUp(self) -> None:
        self.p = self.make_params(self.argparser_parse_args(["--no-privilege-elevation", "snap", "tank"]))

    def test_run_command(self) -> None:
        completed = subprocess.CompletedProcess(["zfs", "list"], 0, "tank\n", "")
        with patch("rack_main.commands.subprocess_run", return_value=completed) as mock_run:
            self.assertEqual("tank\n", run_command(self.p, ["zfs", "list"]))
        mock_run.assert_called_once()
        self.assertTrue(mock_run.call_args[1]["check"])

    def test_run_command_dry_run_executes_nothing(self) -> None:
        with patch("rack_main.commands.subprocess_run") as mock_run:
            self.assertEqual("", run_command(self.p, ["zfs", "destroy", "tank@s1"], is_dry=True))
        mock_run.assert_not_called()
        log: MagicMock = self.p.log  # type: ignore[assignment]
        self.assertEqual("Would execute: %s", log.log.call_args[0][1])

    def test_run_command_propagates_failure(self) -> None:
        with patch("rack_main.commands.subprocess_run", side_effect=called_process_error("boom")):
            with self.assertRaises(subprocess.CalledProcessError):
                run_command(self.p, ["zfs", "list"])

    def test_try_command_returns_none_if_dataset_is_missing(self) -> None:
        error = called_process_error("cannot open 'tank/nope': dataset does not exist\n")
        with patch("rack_main.commands.subprocess_run", side_effect=error):
            self.assertIsNone(try_command(self.p, ["zfs", "list", "tank/nope"]))

    def test_try_command_propagates_other_failures(self) -> None:
        with patch("rack_main.commands.subprocess_run", side_effect=called_process_error("permission denied")):
            with self.assertRaises(subprocess.CalledProcessError):
                try_command(self.p, ["zfs", "list", "tank"])

    def test_is_dataset_missing(self) -> None:
        self.assertTrue(is_dataset_missing("cannot open 'tank/nope': dataset does not exist"))
        self.assertTrue(is_dataset_missing("cannot open 'nope': no such pool"))
        self.assertTrue(is_dataset_missing("cannot open 'tank/x': filesystem does not exist"))
        self.assertFalse(is_dataset_missing("permission denied"))
