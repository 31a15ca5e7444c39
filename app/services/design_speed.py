"""
Line Metrics Engine - Design Speed Resolution

A line's design speed (units per minute) is configured per line recipe. The
job's SKU identifies the recipe exactly; jobs without one fall back to the
recipe name the line reported at job start, matched against SKU names.
"""

from typing import Any, List, Optional, Sequence

import structlog

from app.models.metrics import (
    DesignSpeedProvenance,
    Job,
    ResolvedDesignSpeed,
    TagOwnerType,
    TagRef,
)
from app.repositories.base import ConfigurationRepository, TimeSeriesStore
from app.utils.instrumentation import RESOLVER_TIER_HITS

logger = structlog.get_logger()


def parse_design_speed(raw: Any) -> Optional[float]:
    """Configured value as a positive float, or None when unusable."""
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if value != value or value <= 0:
        return None
    return value


class DesignSpeedStrategy:
    """One tier of the design speed fallback chain."""

    provenance: DesignSpeedProvenance

    async def lookup(
        self,
        job: Job,
        line_id: int,
        config: ConfigurationRepository,
        store: TimeSeriesStore
    ) -> Optional[Any]:
        raise NotImplementedError


class SkuExactStrategy(DesignSpeedStrategy):
    """Line recipe whose recipe links the job's SKU id."""

    provenance = DesignSpeedProvenance.SKU_EXACT

    async def lookup(self, job, line_id, config, store):
        if job.sku_id is None:
            logger.info("Job has no SKU, skipping exact design speed lookup", job_id=job.id)
            return None
        return await config.design_speed_for_sku(line_id, job.sku_id)


class RecipeNameFallbackStrategy(DesignSpeedStrategy):
    """
    Recipe name reported on the line at job start, matched to a SKU name.

    Less reliable than the exact lookup: several SKUs may share a name.
    """

    provenance = DesignSpeedProvenance.RECIPE_NAME_FALLBACK

    async def lookup(self, job, line_id, config, store):
        recipe_tag = await store.find_tag(TagOwnerType.LINE, line_id, TagRef.RECIPE.value)
        if recipe_tag is None:
            logger.info("Recipe tag not found", line_id=line_id)
            return None

        sample = await store.sample_at_or_before(recipe_tag.id, job.actual_start_time)
        recipe_name = str(sample.value).strip() if sample is not None and sample.value is not None else ""
        if not recipe_name:
            logger.info("No recipe name reported before job start", line_id=line_id, job_id=job.id)
            return None

        value = await config.design_speed_for_sku_name(line_id, recipe_name)
        if value is not None:
            logger.warning(
                "Design speed resolved by recipe name, may be ambiguous if SKUs share a name",
                job_id=job.id,
                line_id=line_id,
                recipe_name=recipe_name
            )
        return value


DEFAULT_DESIGN_SPEED_STRATEGIES = (SkuExactStrategy(), RecipeNameFallbackStrategy())


class DesignSpeedResolver:
    """Resolves a line's design speed for a job through ordered configuration lookups."""

    def __init__(
        self,
        config: ConfigurationRepository,
        store: TimeSeriesStore,
        strategies: Optional[Sequence[DesignSpeedStrategy]] = None
    ):
        self.config = config
        self.store = store
        self.strategies: List[DesignSpeedStrategy] = list(strategies or DEFAULT_DESIGN_SPEED_STRATEGIES)

    async def resolve(self, job: Job, line_id: Optional[int] = None) -> ResolvedDesignSpeed:
        """
        Resolve the design speed for a job on a line.

        Returns value 0 with provenance NONE when no tier yields a usable
        value; every formula using it must then resolve to 0.
        """
        if line_id is None:
            line_id = job.line_id

        for strategy in self.strategies:
            raw = await strategy.lookup(job, line_id, self.config, self.store)
            value = parse_design_speed(raw)
            if value is None:
                if raw is not None:
                    logger.warning(
                        "Configured design speed is not usable",
                        line_id=line_id,
                        provenance=strategy.provenance.value,
                        raw_value=raw
                    )
                continue

            RESOLVER_TIER_HITS.labels(resolver="design_speed", tier=strategy.provenance.value).inc()
            logger.info(
                "Design speed resolved",
                job_id=job.id,
                line_id=line_id,
                sku_id=job.sku_id,
                provenance=strategy.provenance.value,
                design_speed=value
            )
            return ResolvedDesignSpeed(value=value, provenance=strategy.provenance)

        RESOLVER_TIER_HITS.labels(resolver="design_speed", tier=DesignSpeedProvenance.NONE.value).inc()
        logger.warning("No design speed found, returning 0", job_id=job.id, line_id=line_id, sku_id=job.sku_id)
        return ResolvedDesignSpeed(value=0, provenance=DesignSpeedProvenance.NONE)
