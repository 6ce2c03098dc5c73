"""Tests for deployment generation and strategy comparison."""

import pytest

from vram_planner.errors import ValidationError
from vram_planner.orchestrator import STRATEGIES, compare_strategies, generate_deployment, get_strategy

SEVEN_B_ON_H100 = {"gpuSpecs": {"totalVRAMGB": 80}, "modelSpecs": {"numParams": 7, "modelPath": "org/llama-7b"}}


class TestGenerateDeployment:
    @pytest.mark.parametrize("strategy", list(STRATEGIES))
    def test_valid_deployment(self, strategy):
        deployment = generate_deployment(SEVEN_B_ON_H100, strategy)
        assert deployment.strategy == strategy
        assert deployment.command == deployment.optimized.command
        assert deployment.validation.is_valid
        assert "--model org/llama-7b" in deployment.command

    def test_tight_memory_throughput_deployment_is_valid(self):
        # 24 GB holds 7 full-length sequences next to a 7B model, below the 32-sequence floor
        deployment = generate_deployment({"totalVRAMGB": 24, "numParams": 7}, "throughput")
        params = deployment.parameters
        assert params["maxNumSeqs"] == 32
        assert params["maxNumBatchedTokens"] == 512
        assert params["enableChunkedPrefill"] is True
        assert "--enable-chunked-prefill" in deployment.command
        assert deployment.validation.is_valid
        assert deployment.validation.warnings == ()

    def test_default_strategy_is_balanced(self):
        assert generate_deployment(SEVEN_B_ON_H100).strategy == "balanced"

    def test_unknown_strategy(self):
        with pytest.raises(ValidationError, match="strategy"):
            generate_deployment(SEVEN_B_ON_H100, "fastest")

    def test_get_strategy(self):
        assert get_strategy("latency") is STRATEGIES["latency"]


class TestCompareStrategies:
    def test_serving_prefers_balanced(self):
        comparison = compare_strategies(SEVEN_B_ON_H100)
        assert comparison.recommended == "balanced"
        assert comparison.viable == ["throughput", "latency", "balanced"]

    def test_chat_prefers_latency(self):
        params = {**SEVEN_B_ON_H100, "workloadSpecs": {"workloadType": "chat"}}
        assert compare_strategies(params).recommended == "latency"

    def test_fallback_to_highest_memory_efficiency(self):
        # 24 GB at 80% leaves 19.2 GB, below the 19.5 GB model
        params = {"totalVRAMGB": 24, "modelSizeGB": 19.5, "workloadType": "chat"}
        comparison = compare_strategies(params)
        assert not comparison.outcomes["latency"].viable
        assert comparison.outcomes["latency"].error
        assert comparison.recommended == "throughput"
        assert "not viable" in comparison.reason
        assert "throughput has the highest memory efficiency (90% GPU memory utilization)" in comparison.reason

    def test_nothing_fits(self):
        comparison = compare_strategies({"totalVRAMGB": 10, "modelSizeGB": 12})
        assert comparison.recommended is None
        assert comparison.viable == []
        assert comparison.reason == "No strategy can fit this model on the given GPU"

    def test_invalid_input_still_raises(self):
        with pytest.raises(ValidationError):
            compare_strategies({"totalVRAMGB": 80})
