"""Core infrastructure: configuration, canonical hashing, DAG, storage, rate limits."""

from quorum.core.canonical import canonical_json, request_hash, stable_hash
from quorum.core.catalog import PipelineCatalog, load_pipeline, parse_pipeline
from quorum.core.config import QuorumSettings, load_settings, resolve_config
from quorum.core.dag import PipelineGraph
from quorum.core.logging import configure_logging, get_logger

__all__ = [
    "PipelineCatalog",
    "PipelineGraph",
    "QuorumSettings",
    "canonical_json",
    "configure_logging",
    "get_logger",
    "load_pipeline",
    "load_settings",
    "parse_pipeline",
    "request_hash",
    "resolve_config",
    "stable_hash",
]
