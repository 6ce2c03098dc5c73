"""Tests for named workload profiles."""

import pytest

from vram_planner.command import serialize_command
from vram_planner.errors import ValidationError
from vram_planner.workload import optimize_for


class TestGenericWorkloads:
    def test_default_profile_is_serving(self):
        rec = optimize_for("workload")
        assert rec.workload_type == "serving"
        assert rec.batching.max_num_seqs == 256
        assert rec.batching.max_model_len == 1224
        assert rec.memory_strategy == "aggressive"
        assert rec.gpu_memory_utilization == 0.95

    def test_chat(self):
        rec = optimize_for("workload", {"workloadType": "chat"})
        assert rec.batching.max_model_len >= 4096
        assert rec.batching.max_num_seqs <= 128
        assert rec.batching.enable_chunked_prefill
        assert rec.special_flags["enable-prefix-caching"] is True

    def test_completion_uses_awq_for_throughput(self):
        rec = optimize_for("workload", {"workloadType": "completion"})
        assert rec.quantization == "awq"
        assert rec.batching.max_num_batched_tokens == 256 * 612

    def test_batch(self):
        rec = optimize_for("workload", {"workloadType": "batch", "peakConcurrency": 50})
        assert rec.quantization == "awq"
        assert rec.batching.max_num_seqs == 512
        assert rec.batching.max_num_batched_tokens == 16384
        assert rec.special_flags["disable-log-stats"] is True

    def test_code_generation_context(self):
        rec = optimize_for("workload", {"workloadType": "code-generation"})
        assert rec.batching.max_model_len == 8192
        assert rec.batching.max_num_seqs <= 64

    def test_low_latency_requirement(self):
        rec = optimize_for("workload", {"latencyRequirement": "low"})
        assert rec.batching.max_num_seqs <= 64
        assert rec.gpu_memory_utilization == 0.85
        assert rec.special_flags["enforce-eager"] is False

    def test_unknown_type_falls_back(self):
        assert optimize_for("workload", {"workloadType": "poetry"}).workload_type == "serving"


class TestLatencyWorkloads:
    def test_defaults(self):
        rec = optimize_for("latency")
        assert rec.batching.max_model_len == 459
        assert rec.batching.max_num_seqs == 16
        assert rec.batching.max_num_batched_tokens == 2048
        assert rec.batching.enable_chunked_prefill
        assert rec.batching.block_size == 16
        assert rec.gpu_memory_utilization == 0.80

    def test_ultra_low(self):
        rec = optimize_for("latency", {"latencyRequirement": "ultra-low", "peakConcurrency": 100})
        assert rec.batching.max_num_seqs == 8
        assert rec.batching.block_size == 8
        assert rec.gpu_memory_utilization == 0.75

    def test_realtime_disables_chunking(self):
        rec = optimize_for("latency", {"workloadType": "realtime"})
        assert not rec.batching.enable_chunked_prefill
        assert rec.special_flags["disable-chunked-prefill"] is True

    def test_streaming(self):
        rec = optimize_for("latency", {"workloadType": "streaming"})
        assert rec.special_flags["stream-interval"] == 1

    def test_tight_response_target(self):
        rec = optimize_for("latency", {"responseTimeTarget": 50})
        assert any("speculative decoding" in c for c in rec.considerations)


class TestBalanceTargets:
    def test_web_api(self):
        rec = optimize_for("balance", {"workloadType": "web-api"})
        assert rec.batching.max_num_seqs == 96
        assert rec.gpu_memory_utilization == 0.80
        assert rec.special_flags["api-key"] == "PLACEHOLDER"

    @pytest.mark.parametrize(
        "priority, seqs, utilization",
        [("throughput", 192, 0.90), ("latency", 89, 0.80), ("balanced", 128, 0.85)],
    )
    def test_performance_priority(self, priority, seqs, utilization):
        rec = optimize_for("balance", {"workloadType": "general", "performancePriority": priority})
        assert rec.batching.max_num_seqs == seqs
        assert rec.gpu_memory_utilization == utilization

    def test_cost_sensitive(self):
        rec = optimize_for("balance", {"costSensitivity": "high"})
        assert rec.quantization == "awq"
        assert rec.batching.swap_space_gb == 2
        assert rec.gpu_memory_utilization == 0.90

    def test_high_reliability(self):
        rec = optimize_for("balance", {"workloadType": "production", "reliabilityRequirement": "high"})
        assert rec.gpu_memory_utilization == 0.75
        assert rec.special_flags["enforce-eager"] is False
        assert rec.special_flags["max-log-len"] == 100

    def test_unknown_target_uses_serving(self):
        rec = optimize_for("balance", {"workloadType": "gaming"})
        assert rec.workload_type == "serving"
        assert rec.batching.max_num_seqs == 128


class TestParameters:
    def test_web_api_command(self):
        rec = optimize_for("balance", {"workloadType": "web-api"})
        command = serialize_command({"model": "m", **rec.parameters()})
        assert "--api-key PLACEHOLDER" in command
        assert "--disable-log-requests" not in command
        assert "--swap-space 4GB" in command

    def test_quantization_flag_only_when_not_fp16(self):
        assert "quantization" not in optimize_for("latency").parameters()
        assert optimize_for("workload", {"workloadType": "batch"}).parameters()["quantization"] == "awq"


class TestErrors:
    def test_unknown_kind(self):
        with pytest.raises(ValidationError, match="kind"):
            optimize_for("gpu")

    def test_invalid_profile(self):
        with pytest.raises(ValidationError):
            optimize_for("workload", {"peakConcurrency": -5})
