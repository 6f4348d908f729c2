"""Univariate wolf resource-selection models and caterpillar report."""

from .models import (
    FitError,
    ModelRunError,
    PartitionError,
    SchemaError,
    build_panels,
    fit_batch,
    fit_partitions,
    fit_single,
    run_panels,
    select_pack,
)

__version__ = "0.1.0"
