"""CLI entry point for the VRAM planner."""

import argparse
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from types import MappingProxyType

from pydantic import BaseModel

from vram_planner.command import serialize_command
from vram_planner.errors import FormatBreakingChange, PlannerError
from vram_planner.memory.breakdown import breakdown
from vram_planner.memory.weights import fp16_size_for
from vram_planner.orchestrator import STRATEGIES, compare_strategies, generate_deployment
from vram_planner.quantization import supported_formats
from vram_planner.recommendation import recommend_quantization
from vram_planner.sources.catalog import find_entry, load_gpu_catalog, load_model_catalog
from vram_planner.sources.dbgpu_source import fetch_gpu_spec, fetch_gpu_specs
from vram_planner.sources.gpuhunt_source import fetch_gpu_catalog
from vram_planner.sources.huggingface import model_params_from_hub
from vram_planner.workload import optimize_for

logger = logging.getLogger(__name__)


def _json_default(obj):
    if isinstance(obj, BaseModel):
        return obj.model_dump()
    if isinstance(obj, MappingProxyType):
        return dict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def emit(payload) -> None:
    if is_dataclass(payload):
        payload = payload.to_dict() if hasattr(payload, "to_dict") else asdict(payload)
    print(json.dumps(payload, indent=2, default=_json_default))


# ---------------------------------------------------------------------------
# Parameter assembly
# ---------------------------------------------------------------------------


def gpu_params(args) -> dict:
    """GPU fields from --gpu (dbgpu lookup) and explicit overrides."""
    params = {}
    if args.gpu:
        params.update(fetch_gpu_spec(args.gpu).model_dump(exclude_none=True))
    if args.vram is not None:
        params["total_vram_gb"] = args.vram
    if args.bandwidth is not None:
        params["memory_bandwidth_gbps"] = args.bandwidth
    params["gpu_count"] = args.gpu_count
    return params


def catalog_model(name: str) -> dict:
    entry = find_entry(load_model_catalog(), name)
    if entry is None:
        raise KeyError(f"Model '{name}' is not in the catalog")
    return entry


def model_params(args) -> dict:
    """Model fields from --hf-model, --catalog-model or explicit flags."""
    params = {}
    if args.hf_model:
        params.update(model_params_from_hub(args.hf_model))
    elif args.catalog_model:
        entry = catalog_model(args.catalog_model)
        params.update({
            "modelSizeGB": entry["size_gb"],
            "quantization": entry["quantization"],
            "modelPath": entry.get("hf_id", entry["name"]),
        })
    if args.params is not None:
        params["numParams"] = args.params
    if args.model_size_gb is not None:
        params["modelSizeGB"] = args.model_size_gb
    if args.quantization:
        params["quantization"] = args.quantization
    if args.model_path:
        params["modelPath"] = args.model_path
    return params


def planner_params(args) -> dict:
    workload = {
        "workloadType": args.workload_type,
        "maxSequenceLength": args.max_seq_len,
        "averageSequenceLength": args.avg_seq_len,
        "expectedConcurrentUsers": args.concurrent_users,
        "latencyTarget": args.latency_target,
        "balanceTarget": args.balance_target,
    }
    return {
        "gpuSpecs": gpu_params(args),
        "modelSpecs": model_params(args),
        "workloadSpecs": workload,
    }


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_breakdown(args) -> None:
    gpu = gpu_params(args)
    if "total_vram_gb" not in gpu:
        raise PlannerError("breakdown needs --vram or --gpu")
    model = model_params(args)
    model_size = model.get("modelSizeGB")
    if args.catalog_model and not args.hf_model and args.model_size_gb is None and model_size is not None:
        # Catalog sizes are already in the entry's format; breakdown expects the fp16 checkpoint
        model_size = fp16_size_for(model_size, catalog_model(args.catalog_model)["quantization"])
    emit(breakdown({
        "totalVRAMGB": gpu["total_vram_gb"],
        "modelSizeGB": model_size,
        "numParams": model.get("numParams"),
        "quantization": model.get("quantization", "fp16"),
        "architecture": model.get("architecture"),
        "batchSize": args.batch_size,
        "maxSeqLen": args.max_seq_len,
        "seqLen": args.avg_seq_len,
        "priority": args.priority,
        "workloadType": args.workload_type,
    }))


def cmd_recommend(args) -> None:
    gpu = gpu_params(args)
    model = model_params(args)
    if "total_vram_gb" not in gpu or model.get("numParams") is None:
        raise PlannerError("recommend needs --vram/--gpu and --params/--hf-model")
    emit(recommend_quantization(
        gpu["total_vram_gb"] * gpu["gpu_count"],
        model["numParams"],
        batch_size=args.batch_size,
        max_seq_len=args.max_seq_len,
    ))


def cmd_optimize(args) -> None:
    deployment = generate_deployment(planner_params(args), strategy=args.strategy)
    emit(deployment)


def cmd_compare(args) -> None:
    comparison = compare_strategies(planner_params(args))
    logger.info("Recommended strategy: %s (%s)", comparison.recommended, comparison.reason)
    emit(comparison)


def cmd_workload(args) -> None:
    profile = {
        "workloadType": args.workload_type,
        "averageInputLength": args.input_len,
        "averageOutputLength": args.output_len,
        "peakConcurrency": args.peak,
        "latencyRequirement": args.latency_requirement,
        "throughputPriority": args.throughput_priority,
        "performancePriority": args.performance_priority,
        "costSensitivity": args.cost_sensitivity,
        "reliabilityRequirement": args.reliability_requirement,
    }
    recommendation = optimize_for(args.kind, profile)
    payload = asdict(recommendation)
    payload["command"] = serialize_command({"model": args.model_path or "MODEL_PATH", **recommendation.parameters()})
    emit(payload)


def cmd_gpus(args) -> None:
    if args.source == "dbgpu":
        emit([spec.model_dump() for spec in fetch_gpu_specs()])
    elif args.source == "gpuhunt":
        emit(fetch_gpu_catalog())
    else:
        emit(load_gpu_catalog())


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _add_gpu_args(parser) -> None:
    parser.add_argument("--gpu", help="GPU name looked up in dbgpu (e.g. H100, A100_80G)")
    parser.add_argument("--vram", type=float, help="Memory per GPU in GB")
    parser.add_argument("--bandwidth", type=float, help="Memory bandwidth in GB/s")
    parser.add_argument("--gpu-count", type=int, default=1)


def _add_model_args(parser) -> None:
    parser.add_argument("--params", type=float, help="Parameter count in billions")
    parser.add_argument("--model-size-gb", type=float)
    parser.add_argument("--quantization", choices=supported_formats())
    parser.add_argument("--hf-model", help="Hugging Face repo ID to read size and format from")
    parser.add_argument("--catalog-model", help="Model name or hf_id from the bundled catalog")
    parser.add_argument("--model-path", help="Value passed to --model in the generated command")


def _add_workload_args(parser) -> None:
    parser.add_argument("--workload-type", default="serving")
    parser.add_argument("--max-seq-len", type=int, default=2048)
    parser.add_argument("--avg-seq-len", type=int, default=512)
    parser.add_argument("--concurrent-users", type=int, default=100)
    parser.add_argument("--latency-target", default="low", choices=["ultra-low", "low", "balanced"])
    parser.add_argument(
        "--balance-target",
        default="general",
        choices=["general", "web-api", "multi-user", "cost-optimized", "production"],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GPU memory estimation and vLLM deployment planning")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("breakdown", help="Per-component VRAM breakdown")
    _add_gpu_args(p)
    _add_model_args(p)
    _add_workload_args(p)
    p.add_argument("--batch-size", type=int, default=32)
    p.add_argument("--priority", default="balanced", choices=["throughput", "balanced", "latency", "conservative"])
    p.set_defaults(func=cmd_breakdown)

    p = sub.add_parser("recommend", help="Least aggressive quantization that fits")
    _add_gpu_args(p)
    _add_model_args(p)
    p.add_argument("--batch-size", type=int, default=1)
    p.add_argument("--max-seq-len", type=int, default=2048)
    p.set_defaults(func=cmd_recommend)

    p = sub.add_parser("optimize", help="vLLM deployment for one strategy")
    _add_gpu_args(p)
    _add_model_args(p)
    _add_workload_args(p)
    p.add_argument("--strategy", choices=list(STRATEGIES), default="balanced")
    p.set_defaults(func=cmd_optimize)

    p = sub.add_parser("compare", help="Run every strategy and recommend one")
    _add_gpu_args(p)
    _add_model_args(p)
    _add_workload_args(p)
    p.set_defaults(func=cmd_compare)

    p = sub.add_parser("workload", help="Settings for a named workload profile")
    p.add_argument("--kind", choices=["workload", "latency", "balance"], default="workload")
    p.add_argument("--workload-type")
    p.add_argument("--input-len", type=int)
    p.add_argument("--output-len", type=int)
    p.add_argument("--peak", type=int, help="Peak concurrent requests")
    p.add_argument("--latency-requirement")
    p.add_argument("--throughput-priority")
    p.add_argument("--performance-priority")
    p.add_argument("--cost-sensitivity")
    p.add_argument("--reliability-requirement")
    p.add_argument("--model-path")
    p.set_defaults(func=cmd_workload)

    p = sub.add_parser("gpus", help="List known GPUs")
    p.add_argument("--source", choices=["catalog", "dbgpu", "gpuhunt"], default="catalog")
    p.set_defaults(func=cmd_gpus)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        args.func(args)
    except FormatBreakingChange as e:
        # Upstream schema drift won't fix itself on retry
        logger.exception("Breaking format change detected: %s", e)
        sys.exit(1)
    except (PlannerError, KeyError) as e:
        logger.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
