"""
Tests for the command-line entry point.
"""

import pytest
import yaml

from sfm2tex.cli import main


def _args(scene, *extra):
    return [
        "--input", str(scene["sfm"]),
        "--inputMesh", str(scene["mesh"]),
        "--output", str(scene["output"]),
        "--textureSide", "32",
        "--downscale", "1",
        *extra,
    ]


class TestMain:
    """Test exit codes and outputs of main()."""

    def test_success(self, scene_factory):
        scene = scene_factory()

        assert main(_args(scene, "--unwrapMethod", "LSCM")) == 0

        assert (scene["output"] / "texturedMesh.obj").exists()
        assert (scene["output"] / "texturedMesh.mtl").exists()
        assert (scene["output"] / "texture_1001.png").exists()

    def test_kebab_case_aliases(self, scene_factory):
        scene = scene_factory()
        argv = [
            "--input", str(scene["sfm"]),
            "--input-mesh", str(scene["mesh"]),
            "--output", str(scene["output"]),
            "--texture-side", "32",
            "--output-texture-file-type", "jpg",
        ]

        assert main(argv) == 0
        assert (scene["output"] / "texture_1001.jpg").exists()

    def test_save_config(self, tmp_path):
        path = tmp_path / "config.yaml"

        assert main(["--save-config", str(path)]) == 0

        data = yaml.safe_load(path.read_text())
        assert data["unwrap_method"] == "Basic"
        assert data["texturing"]["visibility_remapping_method"] == "PullPush"

    def test_config_file(self, scene_factory, tmp_path):
        """Options can come from a YAML file."""
        scene = scene_factory()
        config_path = tmp_path / "run.yaml"
        config_path.write_text(yaml.safe_dump({
            "input_file": str(scene["sfm"]),
            "input_mesh": str(scene["mesh"]),
            "output_dir": str(scene["output"]),
            "texturing": {"texture_side": 16, "downscale": 1},
        }))

        assert main(["--config", str(config_path)]) == 0
        assert (scene["output"] / "texturedMesh.obj").exists()

    def test_missing_required_option(self, scene_factory, capsys):
        scene = scene_factory()

        assert main(["--input", str(scene["sfm"]), "--output", str(scene["output"])]) == 1

        assert "input_mesh" in capsys.readouterr().err

    @pytest.mark.parametrize("option, value", [
        ("--unwrapMethod", "Smart"),
        ("--visibilityRemappingMethod", "Nearest"),
        ("--processColorspace", "HSV"),
        ("--outputTextureFileType", "gif"),
    ])
    def test_invalid_enum_value(self, scene_factory, capsys, option, value):
        scene = scene_factory()

        assert main(_args(scene, option, value)) == 1

        assert value in capsys.readouterr().err

    def test_invalid_bool(self, scene_factory, capsys):
        scene = scene_factory()

        assert main(_args(scene, "--useUDIM", "maybe")) == 1

        assert "Error" in capsys.readouterr().err

    def test_missing_scene_file(self, scene_factory, capsys):
        scene = scene_factory()
        scene["sfm"].unlink()

        assert main(_args(scene)) == 1

        assert "Error" in capsys.readouterr().err
        assert not (scene["output"] / "texturedMesh.obj").exists()

    def test_unknown_view(self, scene_factory, capsys):
        """A landmark observed by an unknown view fails the run."""
        scene = scene_factory(landmarks=[(0, [0.0, 0.0, 0.0], [10, 99])])

        assert main(_args(scene)) == 1

        assert "99" in capsys.readouterr().err
