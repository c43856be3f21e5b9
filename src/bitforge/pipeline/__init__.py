"""Build pipelines and the coordinator that sequences them."""

from bitforge.pipeline.build import (
    BitcoinCoreRecipe,
    BuildPipeline,
    BuildRecipe,
    ElectrsRecipe,
    recipe_for,
)
from bitforge.pipeline.coordinator import PipelineCoordinator
from bitforge.pipeline.stages import STAGE_WEIGHTS, next_stage, progress_at, stage_label

__all__ = [
    "BitcoinCoreRecipe",
    "BuildPipeline",
    "BuildRecipe",
    "ElectrsRecipe",
    "PipelineCoordinator",
    "STAGE_WEIGHTS",
    "next_stage",
    "progress_at",
    "recipe_for",
    "stage_label",
]
