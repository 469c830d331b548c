import pytest

from racky.v1.core.registries import (
    JobProcessorRegistry,
    ProcessorDefinition,
    Registry,
)
from racky.v1.infra.jobs.types import JobType
from racky.v1.infra.jobs.worker import register_job_processor


async def noop_processor(job):
    return None


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    assert registry.list() == []

    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.list() == ["test_impl"]
    assert registry.items() == [("test_impl", "test_value")]

    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_freeze_blocks_registration():
    registry = Registry[str]("Test")
    registry.register("before", "ok")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("after", "nope")
    assert registry.list() == ["before"]


def test_register_job_processor_uses_default_layout():
    registry = JobProcessorRegistry()

    definition = register_job_processor(
        JobType.PRODUCT_INDIVIDUAL, noop_processor, registry=registry
    )

    assert definition == ProcessorDefinition(
        queue_alias="product-processing",
        job_type="product-individual",
        concurrency=5,
        handler=noop_processor,
    )
    assert registry.get("product-individual") is definition


def test_register_job_processor_overrides():
    registry = JobProcessorRegistry()

    definition = register_job_processor(
        "marketplace-sync",
        noop_processor,
        queue_alias="sync-marketplace",
        concurrency=2,
        registry=registry,
    )

    assert definition.queue_alias == "sync-marketplace"
    assert definition.concurrency == 2
    assert registry.list() == ["marketplace-sync"]


def test_register_job_processor_rejects_unknown_type():
    with pytest.raises(ValueError):
        register_job_processor("not-a-job", noop_processor, registry=JobProcessorRegistry())
