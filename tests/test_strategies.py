"""Tests for the throughput, latency and balanced strategies.

Reference sizing for a 7B fp16 model (14 GB) on an 80 GB card, 2048 max
tokens and 512 average: each sequence costs 1 GB of KV cache plus 48 MB of
resident activations (1.046875 GB).

    latency     (64 - 14) * 0.7 / 1.046875 = 33  -> capped at 32
    balanced    (68 - 14) * 0.8 / 1.046875 = 41
    throughput  (72 - 14) * 1.0 / 1.046875 = 55
"""

import pytest

from vram_planner.architecture import estimate_architecture
from vram_planner.command import VLLM_ENTRYPOINT, validate_configuration
from vram_planner.errors import ConfigurationError, ValidationError
from vram_planner.strategies import balanced, latency, throughput
from vram_planner.strategies.base import BatchSizingInput, MetricsInput

LLAMA_7B = estimate_architecture(7)

H100 = {"totalVRAMGB": 80, "memoryBandwidthGBps": 900, "tensorCores": True}

ORDERING_CASES = [
    {"totalVRAMGB": 80, "numParams": 7},
    {"totalVRAMGB": 80, "numParams": 13},
    {"totalVRAMGB": 24, "numParams": 7},
    {"totalVRAMGB": 40, "modelSizeGB": 20},
    {"totalVRAMGB": 141, "numParams": 70, "quantization": "awq"},
    {"totalVRAMGB": 48, "numParams": 7, "maxSequenceLength": 8192, "averageSequenceLength": 2048},
]


def _sizing(available, model=14.0, **kwargs):
    return BatchSizingInput(available_memory_gb=available, model_memory_gb=model, architecture=LLAMA_7B, **kwargs)


# ---------------------------------------------------------------------------
# Cross-strategy properties
# ---------------------------------------------------------------------------


class TestOrdering:
    @pytest.mark.parametrize("params", ORDERING_CASES)
    def test_batch_sizes_are_ordered(self, params):
        lat = latency.optimized_config(params).batch.max_num_seqs
        bal = balanced.optimized_config(params).batch.max_num_seqs
        thr = throughput.optimized_config(params).batch.max_num_seqs
        assert lat <= bal <= thr

    @pytest.mark.parametrize("params", ORDERING_CASES)
    def test_utilizations_are_ordered(self, params):
        lat = latency.optimized_config(params).batch.memory_utilization
        bal = balanced.optimized_config(params).batch.memory_utilization
        thr = throughput.optimized_config(params).batch.memory_utilization
        assert lat <= bal <= thr

    def test_reference_batch_sizes(self):
        params = {"totalVRAMGB": 80, "numParams": 7}
        assert latency.optimized_config(params).batch.max_num_seqs == 32
        assert balanced.optimized_config(params).batch.max_num_seqs == 41
        assert throughput.optimized_config(params).batch.max_num_seqs == 55

    @pytest.mark.parametrize("strategy", [latency, balanced, throughput])
    def test_repeated_calls_are_identical(self, strategy):
        params = {"totalVRAMGB": 80, "numParams": 13}
        assert strategy.optimized_config(params) == strategy.optimized_config(params)


class TestSizingErrors:
    @pytest.mark.parametrize("strategy", [latency, balanced, throughput])
    def test_model_larger_than_memory(self, strategy):
        with pytest.raises(ConfigurationError) as exc_info:
            strategy.optimal_batch_size(_sizing(10, 14))
        assert exc_info.value.required == 14
        assert exc_info.value.available == 10

    @pytest.mark.parametrize("strategy", [latency, balanced, throughput])
    def test_non_positive_memory(self, strategy):
        with pytest.raises(ValidationError):
            strategy.optimal_batch_size(_sizing(0))

    @pytest.mark.parametrize("strategy", [latency, balanced, throughput])
    def test_memory_strategy_model_exceeds_vram(self, strategy):
        with pytest.raises(ConfigurationError):
            strategy.memory_strategy(10, 14)

    def test_utilization_leaves_too_little(self):
        # 16 GB at 80% is 12.8 GB, below the 14 GB model
        with pytest.raises(ConfigurationError, match="80%"):
            latency.memory_strategy(16, 14)

    def test_tight_memory_config_chunks_prefill(self):
        config = throughput.optimized_config({"totalVRAMGB": 24, "numParams": 7})
        assert config.batch.memory_based_limit == 7
        assert config.batch.max_num_seqs == 32
        assert config.batch.max_num_batched_tokens < 2048
        assert config.parameters["enableChunkedPrefill"] is True
        result = validate_configuration(config.parameters)
        assert result.is_valid
        assert result.warnings == ()


# ---------------------------------------------------------------------------
# Throughput
# ---------------------------------------------------------------------------


class TestThroughput:
    def test_batch_target(self):
        memory = throughput.memory_strategy(80, 14, target="batch")
        assert memory.gpu_memory_utilization == 0.95
        assert memory.swap_space_gb == 16
        assert memory.recommended_block_size == 32
        assert memory.enable_chunked_prefill
        assert memory.flags["aggressivePreemption"]

    def test_unknown_workload_uses_serving(self):
        memory = throughput.memory_strategy(80, 14, target="chat")
        assert memory.target == "serving"
        assert memory.gpu_memory_utilization == 0.90

    def test_batched_tokens_capped(self):
        config = throughput.optimal_batch_size(_sizing(72))
        assert config.max_num_seqs == 55
        assert config.max_num_batched_tokens == 8192

    def test_metrics(self):
        metrics = throughput.estimate_metrics(
            MetricsInput(model_size_gb=14, max_num_seqs=55, max_num_batched_tokens=8192), H100
        )
        assert metrics.tokens_per_second == 2475.0
        assert metrics.time_to_first_token_ms == 66
        assert metrics.inter_token_latency_ms == 23
        assert metrics.bottlenecks == ("memory_bandwidth", "batch_size")

    def test_no_tensor_cores_is_compute_bound(self):
        gpu = {**H100, "tensorCores": False}
        metrics = throughput.estimate_metrics(
            MetricsInput(model_size_gb=14, max_num_seqs=128, max_num_batched_tokens=8192), gpu
        )
        assert "compute_capacity" in metrics.bottlenecks
        assert "batch_size" not in metrics.bottlenecks

    def test_command(self):
        config = throughput.optimized_config({"totalVRAMGB": 80, "numParams": 7})
        assert config.command.startswith(VLLM_ENTRYPOINT)
        assert "--max-num-seqs 55" in config.command
        assert "--gpu-memory-utilization 0.9" in config.command
        assert "--swap-space 8GB" in config.command
        assert "--enable-chunked-prefill" not in config.command

    def test_summary(self):
        summary = throughput.optimized_config({"totalVRAMGB": 80, "numParams": 7}).summary
        assert summary.primary_optimizations[0] == "Batch size optimized to 55 concurrent sequences"
        assert summary.expected_improvements["throughputIncrease"] == "172%"


# ---------------------------------------------------------------------------
# Latency
# ---------------------------------------------------------------------------


class TestLatency:
    def test_ultra_low_memory(self):
        memory = latency.memory_strategy(80, 14, target="ultra-low")
        assert memory.gpu_memory_utilization == 0.75
        assert memory.recommended_block_size == 8
        assert memory.swap_space_gb == 2
        assert not memory.enable_chunked_prefill
        assert memory.flags["prioritizeFirstToken"]

    def test_ultra_low_batch(self):
        config = latency.optimal_batch_size(_sizing(60, target="ultra-low"))
        assert config.max_num_seqs == 8
        assert config.max_num_batched_tokens == 512
        assert config.priority_label == "ultra-high"

    def test_metrics_single_sequence(self):
        metrics = latency.estimate_metrics(
            MetricsInput(model_size_gb=14, max_num_seqs=1, max_num_batched_tokens=2048), H100
        )
        assert metrics.time_to_first_token_ms == 354
        assert metrics.inter_token_latency_ms == 26
        assert metrics.bottlenecks == ("prefill_compute",)

    def test_inter_token_latency_grows_with_concurrency(self):
        one = latency.estimate_metrics(
            MetricsInput(model_size_gb=14, max_num_seqs=1, max_num_batched_tokens=2048), H100
        )
        eleven = latency.estimate_metrics(
            MetricsInput(model_size_gb=14, max_num_seqs=11, max_num_batched_tokens=2048), H100
        )
        assert eleven.inter_token_latency_ms == pytest.approx(2 * one.inter_token_latency_ms, abs=1)

    def test_percentiles_ordered(self):
        metrics = latency.estimate_metrics(
            MetricsInput(model_size_gb=14, max_num_seqs=8, max_num_batched_tokens=2048), H100, level="ultra-low"
        )
        assert metrics.latency.p50 <= metrics.latency.p95 <= metrics.latency.p99
        assert metrics.extras["latencyTier"] == "ultra-low"

    def test_command_flags(self):
        config = latency.optimized_config({"totalVRAMGB": 80, "numParams": 7})
        assert "--disable-log-stats" in config.command
        assert "--enforce-eager" not in config.command
        assert "--disable-chunked-prefill" in config.command

    def test_long_context_enables_chunking(self):
        config = latency.optimized_config({"totalVRAMGB": 80, "numParams": 7, "maxSequenceLength": 8192})
        assert config.parameters["enableChunkedPrefill"] is True
        assert config.parameters["disableChunkedPrefill"] is False

    def test_latency_target_from_workload(self):
        config = latency.optimized_config({"totalVRAMGB": 80, "numParams": 7, "latencyTarget": "ultra-low"})
        assert config.batch.target == "ultra-low"
        assert config.parameters["blockSize"] == 8


# ---------------------------------------------------------------------------
# Balanced
# ---------------------------------------------------------------------------


class TestBalanced:
    def test_multi_user(self):
        memory = balanced.memory_strategy(80, 14, target="multi-user")
        assert memory.gpu_memory_utilization == 0.90
        assert memory.recommended_block_size == 32
        assert memory.enable_chunked_prefill

    def test_cost_optimized_skips_chunking(self):
        memory = balanced.memory_strategy(80, 14, target="cost-optimized")
        assert not memory.enable_chunked_prefill
        assert memory.swap_space_gb == 4

    def test_metrics_scores(self):
        metrics = balanced.estimate_metrics(
            MetricsInput(model_size_gb=14, max_num_seqs=41, max_num_batched_tokens=4096), H100
        )
        for key in ("throughputScore", "latencyScore", "balanceScore"):
            assert 0 <= metrics.extras[key] <= 1
        assert metrics.extras["balanceClass"] in {"excellent", "good", "fair", "poor"}

    @pytest.mark.parametrize(
        "score, label", [(0.9, "excellent"), (0.7, "good"), (0.5, "fair"), (0.4, "poor"), (0.1, "poor")]
    )
    def test_balance_class(self, score, label):
        assert balanced.balance_class(score) == label

    def test_deployment_parameters(self):
        config = balanced.optimized_config({
            "totalVRAMGB": 40, "numParams": 7, "gpuCount": 2, "quantization": "gptq",
            "maxSequenceLength": 4096,
        })
        params = config.parameters
        assert list(params)[:6] == [
            "model", "gpuMemoryUtilization", "maxNumSeqs", "maxNumBatchedTokens", "maxModelLen", "blockSize",
        ]
        assert list(params)[-2:] == ["host", "port"]
        assert params["quantization"] == "gptq"
        assert params["tensorParallelSize"] == 2
        assert params["maxChunkedPrefillTokens"] == 1024
        assert "--tensor-parallel-size 2" in config.command

    def test_bf16_sets_dtype(self):
        params = balanced.optimized_config({"totalVRAMGB": 80, "numParams": 7, "quantization": "bf16"}).parameters
        assert params["dtype"] == "bfloat16"
        assert "quantization" not in params
