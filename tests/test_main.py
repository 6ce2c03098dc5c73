"""Tests for the command-line entry point."""

import json
from unittest.mock import patch

import pytest

from vram_planner.errors import FormatBreakingChange
from vram_planner.inputs import GPUSpec
from vram_planner.main import build_parser, main


def _run(capsys, *argv):
    main(list(argv))
    return json.loads(capsys.readouterr().out)


class TestCommands:
    def test_breakdown(self, capsys):
        result = _run(capsys, "breakdown", "--vram", "80", "--model-size-gb", "13")
        assert result["compatibility"]["supportsModel"] is True
        assert result["summary"]["usedMemory"] == 52.19

    @pytest.mark.parametrize("name, size_gb", [("Llama 2 7B AWQ", 3.9), ("Llama 2 7B", 13.5)])
    def test_breakdown_keeps_catalog_serving_size(self, capsys, name, size_gb):
        result = _run(capsys, "breakdown", "--vram", "24", "--catalog-model", name)
        assert result["components"]["modelWeights"]["sizeGB"] == size_gb

    def test_recommend(self, capsys):
        result = _run(capsys, "recommend", "--vram", "8", "--params", "175")
        assert result["can_fit"] is False
        assert "too large" in result["reason"]

    def test_recommend_with_dbgpu_lookup(self, capsys):
        h100 = GPUSpec(name="H100", total_vram_gb=80, memory_bandwidth_gbps=3350, compute_capability=9.0)
        with patch("vram_planner.main.fetch_gpu_spec", return_value=h100) as mock_fetch:
            result = _run(capsys, "recommend", "--gpu", "H100", "--params", "7")
        mock_fetch.assert_called_once_with("H100")
        assert result["recommended_format"] == "fp16"

    def test_optimize(self, capsys):
        result = _run(capsys, "optimize", "--vram", "80", "--params", "7", "--strategy", "throughput")
        assert result["strategy"] == "throughput"
        assert "--max-num-seqs 55" in result["command"]
        assert result["validation"]["is_valid"] is True

    def test_compare(self, capsys):
        result = _run(capsys, "compare", "--vram", "80", "--params", "7")
        assert result["recommended"] == "balanced"
        assert set(result["outcomes"]) == {"throughput", "latency", "balanced"}

    def test_workload(self, capsys):
        result = _run(capsys, "workload", "--kind", "latency", "--workload-type", "streaming")
        assert result["kind"] == "latency"
        assert "--stream-interval 1" in result["command"]
        assert "--model MODEL_PATH" in result["command"]

    def test_gpus_from_catalog(self, capsys):
        result = _run(capsys, "gpus")
        assert {"name": "NVIDIA H100 (80GB)", "vram_gb": 80} in result


class TestErrors:
    def test_missing_model_exits(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["breakdown", "--vram", "80"])
        assert exc_info.value.code == 1

    def test_unknown_catalog_model_exits(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["breakdown", "--vram", "80", "--catalog-model", "Nonexistent 1B"])
        assert exc_info.value.code == 1

    def test_format_change_exits(self):
        error = FormatBreakingChange("gpuhunt", "Query results are missing expected attributes")
        with patch("vram_planner.main.fetch_gpu_catalog", side_effect=error):
            with pytest.raises(SystemExit) as exc_info:
                main(["gpus", "--source", "gpuhunt"])
        assert exc_info.value.code == 1


class TestParser:
    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_defaults(self):
        args = build_parser().parse_args(["optimize", "--vram", "24", "--params", "7"])
        assert args.strategy == "balanced"
        assert args.max_seq_len == 2048
        assert args.log_level == "INFO"
