"""Tests for the full VRAM breakdown.

The reference configuration is a 13 GB fp16 checkpoint served on an 80 GB
card at batch 32 (2048 max tokens, 512 average):

    weights 13 + kv 32 + activations 1.5 + overhead 4.25 + fragmentation 1.44
        = 52.19 GB used
    + swap 8 + reserved 4 = 64.19 GB allocated
"""

import pytest

from vram_planner.errors import UnsupportedFormatError, ValidationError
from vram_planner.inputs import BreakdownRequest
from vram_planner.memory.breakdown import (
    COMPONENT_ORDER,
    breakdown,
    classify_pressure,
    efficiency_rating,
)

REFERENCE = {"totalVRAMGB": 80, "modelSizeGB": 13, "quantization": "fp16", "batchSize": 32}

CONFIGS = [
    REFERENCE,
    {"totalVRAMGB": 24, "numParams": 7, "quantization": "awq", "batchSize": 8},
    {"totalVRAMGB": 24, "numParams": 13, "batchSize": 4},
    {"totalVRAMGB": 141, "numParams": 70, "quantization": "gptq", "batchSize": 64, "maxSeqLen": 4096},
    {"totalVRAMGB": 16, "modelSizeGB": 6, "quantization": "int8", "batchSize": 1, "priority": "latency"},
    {"totalVRAMGB": 48, "numParams": 30, "quantization": "int4", "swapSpaceGB": 0, "kvCachePrecision": "int8"},
]

USED_COMPONENTS = ("modelWeights", "kvCache", "activations", "systemOverhead", "fragmentation")


def _size(result, name):
    return result.components[name].size_gb


# ---------------------------------------------------------------------------
# Accounting identities
# ---------------------------------------------------------------------------


class TestIdentities:
    @pytest.mark.parametrize("config", CONFIGS)
    def test_used_is_sum_of_components(self, config):
        result = breakdown(config)
        expected = sum(_size(result, name) for name in USED_COMPONENTS)
        assert result.summary.used_memory_gb == pytest.approx(expected, abs=1e-3)

    @pytest.mark.parametrize("config", CONFIGS)
    def test_allocated_adds_swap_and_reserved(self, config):
        result = breakdown(config)
        expected = result.summary.used_memory_gb + _size(result, "swap") + _size(result, "reserved")
        assert result.summary.total_allocated_gb == pytest.approx(expected, abs=1e-3)

    @pytest.mark.parametrize("config", CONFIGS)
    def test_supports_model_iff_allocation_fits(self, config):
        result = breakdown(config)
        fits = result.summary.total_allocated_gb <= result.total_vram_gb
        assert result.compatibility.supports_model is fits

    @pytest.mark.parametrize("config", CONFIGS)
    def test_all_seven_components_present(self, config):
        result = breakdown(config)
        assert tuple(result.components) == COMPONENT_ORDER
        assert list(result.to_dict()["components"]) == list(COMPONENT_ORDER)

    def test_repeated_calls_are_identical(self):
        assert breakdown(REFERENCE) == breakdown(REFERENCE)


# ---------------------------------------------------------------------------
# Reference configuration
# ---------------------------------------------------------------------------


class TestReference:
    def test_component_sizes(self):
        result = breakdown(REFERENCE)
        assert _size(result, "modelWeights") == pytest.approx(13.0)
        assert _size(result, "kvCache") == pytest.approx(32.0)
        assert _size(result, "activations") == pytest.approx(1.5)
        assert _size(result, "systemOverhead") == pytest.approx(4.25)
        assert _size(result, "fragmentation") == pytest.approx(1.44)
        assert _size(result, "swap") == pytest.approx(8.0)
        assert _size(result, "reserved") == pytest.approx(4.0)

    def test_summary(self):
        result = breakdown(REFERENCE)
        assert result.summary.used_memory_gb == pytest.approx(52.19)
        assert result.summary.total_allocated_gb == pytest.approx(64.19)
        assert result.summary.available_memory_gb == pytest.approx(15.81)
        assert result.compatibility.supports_model

    def test_batch_guidance(self):
        result = breakdown(REFERENCE)
        assert result.compatibility.recommended_batch_size == 50
        assert result.compatibility.max_concurrent_sequences == 53

    def test_pressure(self):
        result = breakdown(REFERENCE)
        assert result.pressure.level == "Low"
        assert result.pressure.is_stable
        assert result.pressure.has_headroom

    def test_snake_case_input_matches_camel_case(self):
        snake = {"total_vram_gb": 80, "model_size_gb": 13, "quantization": "fp16", "batch_size": 32}
        assert breakdown(snake) == breakdown(REFERENCE)

    def test_accepts_request_model(self):
        request = BreakdownRequest(total_vram_gb=80, model_size_gb=13, batch_size=32)
        assert breakdown(request) == breakdown(REFERENCE)

    def test_to_dict_rounds_for_display(self):
        summary = breakdown(REFERENCE).to_dict()["summary"]
        assert summary["usedMemory"] == 52.19
        assert summary["totalAllocated"] == 64.19


# ---------------------------------------------------------------------------
# Over-committed and quantized configurations
# ---------------------------------------------------------------------------


class TestOvercommitted:
    def test_fp16_13b_on_24gb(self):
        result = breakdown({"totalVRAMGB": 24, "numParams": 13, "batchSize": 4})
        assert not result.compatibility.supports_model
        assert result.pressure.level == "Critical"
        assert not result.pressure.is_stable
        assert result.summary.available_memory_gb == 0

    def test_high_priority_recommendations_come_first(self):
        result = breakdown({"totalVRAMGB": 24, "numParams": 13, "batchSize": 4})
        assert result.recommendations[0].priority == "High"
        assert result.recommendations[0].title == "Reduce Memory Usage"
        ranks = [{"High": 0, "Medium": 1, "Low": 2}[r.priority] for r in result.recommendations]
        assert ranks == sorted(ranks)

    def test_explicit_zero_swap(self):
        result = breakdown({**REFERENCE, "swapSpaceGB": 0})
        assert _size(result, "swap") == 0
        assert result.components["swap"].details["explicit"] is True


class TestQuantizationBenefit:
    def test_awq_checkpoint(self):
        benefit = breakdown({**REFERENCE, "quantization": "awq"}).quantization_benefit
        assert benefit.savings_percent == pytest.approx(74.75)
        assert benefit.description == "Good memory savings with moderate quality impact"
        assert benefit.is_recommended

    def test_fp16_has_no_savings(self):
        benefit = breakdown(REFERENCE).quantization_benefit
        assert benefit.savings_gb == 0
        assert not benefit.is_recommended
        assert benefit.description.startswith("Minimal savings")

    def test_fp32_suggests_quantization(self):
        result = breakdown({**REFERENCE, "quantization": "fp32"})
        assert any(r.category == "quantization" for r in result.recommendations)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_missing_model_size(self):
        with pytest.raises(ValidationError, match="Either modelSizeGB or numParams"):
            breakdown({"totalVRAMGB": 80})

    def test_missing_vram(self):
        with pytest.raises(ValidationError, match="total_vram_gb|totalVRAMGB"):
            breakdown({"modelSizeGB": 13})

    def test_negative_batch(self):
        with pytest.raises(ValidationError, match="batch"):
            breakdown({**REFERENCE, "batchSize": -1})

    def test_unknown_quantization(self):
        with pytest.raises(UnsupportedFormatError):
            breakdown({**REFERENCE, "quantization": "fp8"})

    def test_unknown_kv_precision(self):
        with pytest.raises(UnsupportedFormatError):
            breakdown({**REFERENCE, "kvCachePrecision": "int4"})


# ---------------------------------------------------------------------------
# Classification tables
# ---------------------------------------------------------------------------


class TestClassification:
    @pytest.mark.parametrize(
        "utilization, level",
        [(120, "Critical"), (95, "Critical"), (92, "High"), (85, "Moderate"), (70, "Low"), (10, "Very Low")],
    )
    def test_pressure_levels(self, utilization, level):
        assert classify_pressure(utilization, 10).level == level

    def test_headroom_threshold(self):
        assert not classify_pressure(50, 2.0).has_headroom
        assert classify_pressure(50, 2.5).has_headroom

    def test_critical_recommendations(self):
        assert classify_pressure(97, 0.5).recommendations == (
            "Reduce batch size immediately",
            "Use more aggressive quantization",
            "Consider model sharding across multiple GPUs",
            "Reduce maximum sequence length",
        )

    def test_high_recommendations(self):
        pressure = classify_pressure(92, 1.0)
        assert pressure.recommendations == (
            "Reduce batch size for stability",
            "Monitor for OOM errors",
            "Consider using int8 or 4-bit quantization",
            "Implement gradual scaling",
        )
        assert not pressure.is_stable

    @pytest.mark.parametrize(
        "utilization, first, count",
        [
            (85, "Monitor memory usage during peak loads", 3),
            (70, "Consider increasing batch size for better throughput", 3),
            (10, "Increase batch size significantly", 4),
        ],
    )
    def test_stable_level_recommendations(self, utilization, first, count):
        pressure = classify_pressure(utilization, 10)
        assert pressure.recommendations[0] == first
        assert len(pressure.recommendations) == count
        assert pressure.is_stable

    @pytest.mark.parametrize(
        "score, rating",
        [(0.95, "Excellent"), (0.85, "Very Good"), (0.7, "Good"), (0.65, "Fair"), (0.55, "Poor"), (0.2, "Very Poor")],
    )
    def test_efficiency_rating(self, score, rating):
        assert efficiency_rating(score) == rating
