import cv2
import numpy as np
import pytest

from keypose_app.cli.main import main
from keypose_app.errors import InvalidParameterError
from keypose_app.io.calib_io import load_calibration, save_calibration
from keypose_app.model.data_structures import CameraParameters
from test_features import textured_image


def test_calibration_round_trip(tmp_path):
    cam = CameraParameters(px=600.0, py=610.0, u0=160.0, v0=120.0)
    path = str(tmp_path / "calib.npz")
    save_calibration(path, cam)
    assert load_calibration(path) == cam


def test_calibration_with_distortion_is_rejected(tmp_path):
    path = str(tmp_path / "calib.npz")
    np.savez(path, K=np.eye(3), dist_coeffs=np.array([0.1, 0, 0, 0, 0]))
    with pytest.raises(InvalidParameterError):
        load_calibration(path)


def test_build_then_match(tmp_path, capsys):
    image_path = str(tmp_path / "object.png")
    # Stored as BGR by imwrite; the CLI converts back to RGB.
    cv2.imwrite(image_path, textured_image())
    model_path = str(tmp_path / "model.txt")

    assert main(["build", "--model", model_path, "--image", image_path]) == 0
    out = capsys.readouterr().out
    assert "Learning data saved" in out

    assert main(["match", "--model", model_path, "--image", image_path, "--detect"]) == 0
    out = capsys.readouterr().out
    assert "Object present" in out
    assert "training image 0" in out


def test_missing_model_reports_error(tmp_path, capsys):
    image_path = str(tmp_path / "object.png")
    cv2.imwrite(image_path, textured_image())
    bad_model = tmp_path / "model.txt"
    bad_model.write_text("not a model\n")

    assert main(["match", "--model", str(bad_model), "--image", image_path]) == 1
    assert "Error" in capsys.readouterr().out
