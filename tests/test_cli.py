"""Tests for CLI module."""

import argparse
import json
import pathlib
from collections.abc import Callable
from unittest.mock import AsyncMock, patch

import pytest

from genai_patcher.cli import main, parse_region
from genai_patcher.core.exceptions import EditServiceError
from genai_patcher.enums import ProcessScope
from genai_patcher.models import Region
from genai_patcher.services import ProcessReport, RegionProcessor
from genai_patcher.services.compositing import image_size


class TestParseRegion:
    """Tests for parse_region function."""

    def test_valid_region(self) -> None:
        """
        Test that an x,y,w,h string becomes a region.

        Returns:
            None
        """
        region = parse_region("10,20,30,40")
        assert (region.x, region.y, region.width, region.height) == (10, 20, 30, 40)

    def test_wrong_arity_raises(self) -> None:
        """
        Test that anything but four values is rejected.

        Returns:
            None
        """
        with pytest.raises(argparse.ArgumentTypeError):
            parse_region("10,20,30")

    def test_out_of_bounds_raises(self) -> None:
        """
        Test that a region leaving the image is rejected.

        Returns:
            None
        """
        with pytest.raises(argparse.ArgumentTypeError):
            parse_region("80,0,30,10")


class TestMain:
    """Tests for main function."""

    def test_main_no_args_shows_help(self) -> None:
        """
        Test that main with no args shows help and returns 0.

        Returns:
            None
        """
        with patch("argparse.ArgumentParser.print_help") as mock_help:
            result = main([])
            mock_help.assert_called_once()
            assert result == 0

    def test_main_process_command(self) -> None:
        """
        Test that the process command dispatches to run_process.

        Returns:
            None
        """
        with patch("genai_patcher.cli.run_process", new_callable=AsyncMock, return_value=0) as mock_run:
            result = main(["process", "a.png", "--region", "0,0,50,50", "--prompt", "fix"])
            mock_run.assert_awaited_once()
            args = mock_run.call_args[0][0]
            assert args.images == [pathlib.Path("a.png")]
            assert args.prompt == "fix"
            assert len(args.region) == 1
            assert result == 0

    def test_main_models_command(self) -> None:
        """
        Test that the models command prints model ids.

        Returns:
            None
        """
        with patch(
            "genai_patcher.cli.list_openai_models",
            new_callable=AsyncMock,
            return_value=["model-a", "model-b"],
        ):
            assert main(["models"]) == 0

    def test_main_service_error_returns_one(self) -> None:
        """
        Test that a package error is logged and mapped to exit code 1.

        Returns:
            None
        """
        with patch(
            "genai_patcher.cli.list_openai_models",
            new_callable=AsyncMock,
            side_effect=EditServiceError("down"),
        ):
            assert main(["models"]) == 1


class TestRunProcess:
    """Tests for the process command."""

    def test_writes_result_files(
        self,
        tmp_path: pathlib.Path,
        png_factory: Callable[..., bytes],
    ) -> None:
        """
        Test that each processed image is written as <name>_result.png.

        Args:
            tmp_path (pathlib.Path): Pytest fixture for temporary directory.
            png_factory (Callable[..., bytes]): PNG builder fixture.

        """
        source = tmp_path / "page1.png"
        source.write_bytes(png_factory(20, 20))
        output = tmp_path / "out"

        async def fake_process(
            self: RegionProcessor, scope: ProcessScope, selected_image_id: str | None = None
        ) -> ProcessReport:
            for image in self.store.images:
                self.store.update_image(image.id, final_result=image.preview)
            return ProcessReport(images=1, completed=1)

        with patch("genai_patcher.cli.RegionProcessor.process", fake_process):
            result = main(["process", str(source), "--output", str(output)])

        assert result == 0
        written = output / "page1_result.png"
        assert image_size(written.read_bytes()) == (20, 20)

    def test_failed_regions_return_one(
        self,
        tmp_path: pathlib.Path,
        png_factory: Callable[..., bytes],
    ) -> None:
        """
        Test that any failed region makes the command exit with 1.

        Args:
            tmp_path (pathlib.Path): Pytest fixture for temporary directory.
            png_factory (Callable[..., bytes]): PNG builder fixture.

        """
        source = tmp_path / "page.png"
        source.write_bytes(png_factory(20, 20))

        with patch(
            "genai_patcher.cli.RegionProcessor.process",
            new_callable=AsyncMock,
            return_value=ProcessReport(images=1, failed=1),
        ):
            assert main(["process", str(source)]) == 1


class TestRunDetect:
    """Tests for the detect command."""

    def test_prints_regions_as_json(
        self,
        tmp_path: pathlib.Path,
        png_factory: Callable[..., bytes],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """
        Test that detected regions are printed as JSON rectangles.

        Args:
            tmp_path (pathlib.Path): Pytest fixture for temporary directory.
            png_factory (Callable[..., bytes]): PNG builder fixture.
            capsys (pytest.CaptureFixture[str]): Output capture fixture.

        """
        source = tmp_path / "page.png"
        source.write_bytes(png_factory(20, 20))

        with patch("genai_patcher.cli.setup_logging"), patch(
            "genai_patcher.cli.DetectionClient.detect",
            new_callable=AsyncMock,
            return_value=[Region(x=1, y=2, width=3, height=4)],
        ):
            assert main(["detect", str(source)]) == 0

        printed = json.loads(capsys.readouterr().out)
        assert printed == [{"x": 1.0, "y": 2.0, "width": 3.0, "height": 4.0}]
