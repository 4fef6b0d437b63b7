import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from pumpkin_runner.commands import CommandResult
from pumpkin_runner.config import RunnerConfig
from pumpkin_runner.errors import PluginArtifactMissing, PluginBuildFailed, RuntimeBuildFailed
from pumpkin_runner.plugin_builder import PluginBuilder
from pumpkin_runner.project import RuntimeRequirement, load_project
from pumpkin_runner.rundir import RunDirectory
from pumpkin_runner.runtime_builder import RuntimeBuilder

from tests.python.fakes import FakeCommandRunner, clean_env, write_crate

REQ = RuntimeRequirement("https://github.com/Pumpkin-MC/Pumpkin.git", "master", "debug")


class BuilderTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.project_root = Path(self._tmp.name)
        self.addCleanup(self._tmp.cleanup)
        env = mock.patch.dict(os.environ, clean_env(), clear=True)
        env.start()
        self.addCleanup(env.stop)
        self.run_dir = RunDirectory(self.project_root, platform="linux").ensure()
        self.runner = FakeCommandRunner()


class RuntimeBuilderTest(BuilderTestCase):
    def builder(self, **kwargs) -> RuntimeBuilder:
        return RuntimeBuilder(self.runner, self.run_dir, **kwargs)

    def test_first_build_clones_and_promotes(self):
        marker = self.builder().build(REQ)
        self.assertEqual(len(self.runner.commands("git", "clone")), 1)
        self.assertEqual(len(self.runner.cargo_runtime_builds()), 1)
        self.assertTrue(self.run_dir.validate(REQ))
        self.assertEqual(marker.ref, "master")
        self.assertTrue(marker.commit.startswith("0123456789"))
        self.assertEqual(self.run_dir.runtime_binary.read_bytes(), self.runner.server_payload)
        self.assertEqual(list(self.run_dir.staging_root.iterdir()), [])

    def test_existing_checkout_is_fetched_not_cloned(self):
        self.builder().build(REQ)
        self.builder().build(REQ)
        self.assertEqual(len(self.runner.commands("git", "clone")), 1)
        self.assertEqual(len(self.runner.commands("git", "fetch")), 1)
        self.assertEqual(len(self.runner.cargo_runtime_builds()), 2)

    def test_fetch_failure_only_warns(self):
        self.builder().build(REQ)
        self.runner.fail["git fetch"] = CommandResult(128, "", "fatal: unable to access")
        with self.assertLogs("pumpkin_runner.runtime_builder", level="WARNING") as logs:
            self.builder().build(REQ)
        self.assertIn("unable to access", "\n".join(logs.output))
        self.assertTrue(self.run_dir.validate(REQ))

    def test_detached_ref_is_not_pulled(self):
        self.runner.on_branch = False
        self.builder().build(RuntimeRequirement(REQ.source, "abc123", "debug"))
        self.assertEqual(self.runner.commands("git", "pull"), [])
        checkout = self.runner.commands("git", "checkout")[0]
        self.assertEqual(checkout[1], ("checkout", "abc123"))

    def test_release_profile_passes_release_flag(self):
        req = RuntimeRequirement(REQ.source, REQ.ref, "release")
        self.builder().build(req)
        self.assertIn("--release", self.runner.cargo_runtime_builds()[0][1])
        self.assertTrue(self.run_dir.validate(req))

    def test_clone_failure_leaves_nothing_valid(self):
        self.runner.fail["git clone"] = CommandResult(128, "", "fatal: repository not found")
        with self.assertRaises(RuntimeBuildFailed) as ctx:
            self.builder().build(REQ)
        self.assertIn("repository not found", ctx.exception.stderr)
        self.assertFalse(self.run_dir.marker_path.exists())
        self.assertFalse(self.run_dir.runtime_binary.exists())

    def test_checkout_failure(self):
        self.runner.fail["git checkout"] = CommandResult(1, "", "error: pathspec 'nope' did not match")
        with self.assertRaises(RuntimeBuildFailed) as ctx:
            self.builder().build(RuntimeRequirement(REQ.source, "nope", "debug"))
        self.assertIn("pathspec", ctx.exception.stderr)
        self.assertEqual(self.runner.cargo_runtime_builds(), [])

    def test_compile_failure_keeps_previous_cache(self):
        self.builder().build(REQ)
        before_marker = self.run_dir.marker_path.read_text(encoding="utf-8")
        before_binary = self.run_dir.runtime_binary.read_bytes()

        self.runner.server_payload = b"never promoted"
        self.runner.fail["cargo build"] = CommandResult(101, "", "error[E0425]: cannot find value")
        with self.assertRaises(RuntimeBuildFailed) as ctx:
            self.builder().build(REQ, fresh=True)

        self.assertIn("E0425", ctx.exception.stderr)
        self.assertEqual(self.run_dir.marker_path.read_text(encoding="utf-8"), before_marker)
        self.assertEqual(self.run_dir.runtime_binary.read_bytes(), before_binary)
        self.assertTrue(self.run_dir.validate(REQ))
        self.assertEqual(list(self.run_dir.staging_root.iterdir()), [])

    def test_missing_build_output(self):
        self.runner.fail["cargo build"] = CommandResult(0, "", "")
        with self.assertRaises(RuntimeBuildFailed):
            self.builder().build(REQ)
        self.assertFalse(self.run_dir.validate())

    def test_fresh_reclones(self):
        self.builder().build(REQ)
        stray = self.run_dir.source_dir / "stray.txt"
        stray.write_text("left over", encoding="utf-8")
        self.builder().build(REQ, fresh=True)
        self.assertEqual(len(self.runner.commands("git", "clone")), 2)
        self.assertFalse(stray.exists())

    def test_changed_source_reclones(self):
        self.builder().build(REQ)
        fork = RuntimeRequirement("https://example.com/fork/Pumpkin.git", "master", "debug")
        self.builder().build(fork)
        clones = self.runner.commands("git", "clone")
        self.assertEqual(len(clones), 2)
        self.assertEqual(clones[1][1][1], fork.source)
        self.assertTrue(self.run_dir.validate(fork))

    def test_prebuilt_binary_skips_git_and_cargo(self):
        prebuilt = self.project_root / "dist" / "pumpkin"
        prebuilt.parent.mkdir()
        prebuilt.write_bytes(b"prebuilt server")
        marker = self.builder(prebuilt=prebuilt).build(REQ)
        self.assertEqual(self.runner.calls, [])
        self.assertEqual(self.run_dir.runtime_binary.read_bytes(), b"prebuilt server")
        self.assertTrue(marker.commit.startswith("prebuilt:"))
        self.assertTrue(self.run_dir.validate(REQ))

    def test_missing_prebuilt(self):
        with self.assertRaises(RuntimeBuildFailed):
            self.builder(prebuilt=self.project_root / "nope").build(REQ)


class PluginBuilderTest(BuilderTestCase):
    def setUp(self):
        super().setUp()
        self.project = load_project(write_crate(self.project_root), RunnerConfig(), env={})
        self.plugins = PluginBuilder(self.runner, self.run_dir)

    def test_build_copies_artifact_into_plugins(self):
        dest = self.plugins.build(self.project)
        self.assertEqual(dest, self.run_dir.plugins_dir / "libmy_plugin.so")
        self.assertEqual(dest.read_bytes(), self.runner.plugin_payload)
        call = self.runner.cargo_plugin_builds()[0]
        self.assertEqual(call[1][:3], ("build", "--manifest-path", str(self.project.manifest_path)))
        self.assertEqual(call[2], str(self.project_root))
        self.assertEqual(self.run_dir.read_plugin_record().filename, "libmy_plugin.so")

    def test_build_failure_carries_stderr(self):
        self.runner.fail["cargo build plugin"] = CommandResult(101, "", "error: could not compile `my-plugin`")
        with self.assertRaises(PluginBuildFailed) as ctx:
            self.plugins.build(self.project)
        self.assertIn("could not compile", ctx.exception.stderr)
        self.assertIsNone(self.run_dir.plugin_artifact("libmy_plugin.so"))

    def test_failed_rebuild_does_not_fall_back_silently(self):
        self.plugins.build(self.project)
        self.runner.fail["cargo build plugin"] = CommandResult(101, "", "error")
        with self.assertRaises(PluginBuildFailed):
            self.plugins.build(self.project)

    def test_successful_build_without_library(self):
        self.runner.fail["cargo build plugin"] = CommandResult(0, "", "")
        with self.assertRaises(PluginArtifactMissing):
            self.plugins.build(self.project)

    def test_artifact_found_through_cargo_target_dir(self):
        with mock.patch.dict(os.environ, {"CARGO_TARGET_DIR": "out"}):
            dest = self.plugins.build(self.project)
        self.assertEqual(dest.read_bytes(), self.runner.plugin_payload)
        self.assertTrue((self.project_root / "out" / "debug" / "libmy_plugin.so").is_file())
        self.assertFalse((self.project_root / "target").exists())

    def test_target_dir_falls_back_when_metadata_fails(self):
        self.runner.fail["cargo metadata"] = CommandResult(101, "", "error: failed to parse manifest")
        self.assertEqual(self.plugins.target_dir(self.project), self.project.target_dir)
        self.assertEqual(self.plugins.build(self.project), self.run_dir.plugins_dir / "libmy_plugin.so")

    def test_target_dir_ignores_garbled_metadata(self):
        self.runner.fail["cargo metadata"] = CommandResult(0, "warning: not json", "")
        self.assertEqual(self.plugins.target_dir(self.project), self.project.target_dir)

    def test_reuse_requires_previous_build(self):
        with self.assertRaises(PluginArtifactMissing):
            self.plugins.reuse(self.project)
        self.plugins.build(self.project)
        self.assertEqual(self.plugins.reuse(self.project), self.run_dir.plugins_dir / "libmy_plugin.so")
        self.assertEqual(len(self.runner.cargo_plugin_builds()), 1)


if __name__ == "__main__":
    unittest.main()
