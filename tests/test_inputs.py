"""Tests for input normalization across the structured, flat and legacy shapes."""

import pytest

from vram_planner.errors import UnsupportedFormatError, ValidationError
from vram_planner.inputs import WorkloadProfile, normalize, parse_model


class TestFlat:
    def test_defaults(self):
        request = normalize({"totalVRAMGB": 80, "numParams": 7})
        assert request.gpu.total_vram_gb == 80
        assert request.gpu.memory_bandwidth_gbps == 900
        assert request.gpu.gpu_count == 1
        assert request.model_size_gb == pytest.approx(14.0)
        assert request.quantization == "fp16"
        assert request.workload.max_sequence_length == 2048
        assert request.workload.average_sequence_length == 512
        assert request.workload.workload_type == "serving"
        assert request.model.model_path == "MODEL_PATH"

    def test_estimated_architecture(self):
        request = normalize({"totalVRAMGB": 80, "numParams": 7})
        assert request.architecture_estimated
        assert request.architecture.name == "large-7b"

    def test_snake_case_keys(self):
        request = normalize({"total_vram_gb": 40, "num_params": 13, "max_sequence_length": 4096})
        assert request.gpu.total_vram_gb == 40
        assert request.workload.max_sequence_length == 4096

    def test_quantization_is_normalized(self):
        request = normalize({"totalVRAMGB": 24, "numParams": 7, "quantization": "AWQ"})
        assert request.quantization == "awq"
        assert request.model_size_gb == pytest.approx(3.57)

    def test_explicit_size_is_used_as_is(self):
        request = normalize({"totalVRAMGB": 80, "modelSizeGB": 26})
        assert request.model_size_gb == 26
        assert request.architecture.name == "large-13b"

    def test_flat_architecture_fields(self):
        request = normalize({
            "totalVRAMGB": 80, "numParams": 8, "layers": 32, "hiddenSize": 4096, "numHeads": 32,
        })
        assert not request.architecture_estimated
        assert request.architecture.name == "custom"
        assert request.architecture.layers == 32


class TestPrecedence:
    def test_structured_beats_flat(self):
        request = normalize({"totalVRAMGB": 40, "gpuSpecs": {"totalVRAMGB": 80}, "numParams": 7})
        assert request.gpu.total_vram_gb == 80

    def test_fields_resolve_independently(self):
        request = normalize({
            "totalVRAMGB": 40,
            "gpuSpecs": {"memoryBandwidthGBps": 2000},
            "numParams": 7,
        })
        assert request.gpu.total_vram_gb == 40
        assert request.gpu.memory_bandwidth_gbps == 2000

    def test_legacy_shape(self):
        request = normalize({
            "gpu": {"memory": 24, "count": 2},
            "workload": {"maxSeqLen": 4096, "concurrentRequests": 10, "averageTokensPerRequest": 300},
            "numParams": 7,
        })
        assert request.gpu.total_vram_gb == 24
        assert request.gpu.gpu_count == 2
        assert request.workload.max_sequence_length == 4096
        assert request.workload.expected_concurrent_users == 10
        assert request.workload.average_sequence_length == 300

    def test_flat_beats_legacy(self):
        request = normalize({"gpu": {"memory": 24}, "totalVRAMGB": 48, "numParams": 7})
        assert request.gpu.total_vram_gb == 48

    def test_none_is_absent(self):
        request = normalize({"gpuSpecs": {"totalVRAMGB": None}, "totalVRAMGB": 40, "numParams": 7})
        assert request.gpu.total_vram_gb == 40

    def test_structured_model_specs(self):
        request = normalize({
            "gpuSpecs": {"totalVRAMGB": 80},
            "modelSpecs": {"numParams": 13, "quantization": "gptq", "modelPath": "org/model"},
            "workloadSpecs": {"workloadType": "batch"},
        })
        assert request.quantization == "gptq"
        assert request.model.model_path == "org/model"
        assert request.workload.workload_type == "batch"


class TestErrors:
    def test_missing_model(self):
        with pytest.raises(ValidationError, match="Either modelSizeGB or numParams must be provided"):
            normalize({"totalVRAMGB": 80})

    def test_negative_vram(self):
        with pytest.raises(ValidationError, match="vram"):
            normalize({"totalVRAMGB": -1, "numParams": 7})

    def test_zero_params(self):
        with pytest.raises(ValidationError):
            normalize({"totalVRAMGB": 80, "numParams": 0})

    def test_unknown_quantization(self):
        with pytest.raises(UnsupportedFormatError):
            normalize({"totalVRAMGB": 80, "numParams": 7, "quantization": "fp8"})

    def test_not_a_mapping(self):
        with pytest.raises(ValidationError):
            normalize(["totalVRAMGB", 80])


class TestWorkloadProfile:
    def test_all_fields_optional(self):
        profile = parse_model(WorkloadProfile, {})
        assert profile.workload_type is None

    def test_camel_case(self):
        profile = parse_model(WorkloadProfile, {"workloadType": "chat", "peakConcurrency": 50})
        assert profile.workload_type == "chat"
        assert profile.peak_concurrency == 50

    def test_rejects_non_positive_lengths(self):
        with pytest.raises(ValidationError):
            parse_model(WorkloadProfile, {"averageInputLength": 0})
