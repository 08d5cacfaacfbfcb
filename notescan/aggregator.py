"""
Aggregator for dashboard statistics over persisted mentions.

Counts per category in one of two modes:
- raw: every mention (frequency / intensity views)
- unique_patients: distinct patients with at least one mention (prevalence views)

Percentages are normalized per family, so HRSN categories are measured
against the HRSN total and clinical categories against the clinical total.
"""
from typing import Iterable, List, Optional, Union

import pandas as pd

from notescan.types.enums import CountMode, ProblemFlag
from notescan.types.models import CategoryCount, Mention
from notescan.utils import get_logger

logger = get_logger("Aggregator")

GROUP_BY_FIELDS = ("diagnostic_category", "diagnosis", "segment")
UNCATEGORIZED = "Uncategorized"
FAMILY_ORDER = {ProblemFlag.SYMPTOM.value: 0, ProblemFlag.PROBLEM.value: 1}


class Aggregator:
    """Per-category counts and family-normalized percentages."""

    def aggregate(
        self,
        mentions: Iterable[Mention],
        mode: Union[CountMode, str] = CountMode.RAW,
        group_by: str = "diagnostic_category",
        family: Optional[Union[ProblemFlag, str]] = None,
    ) -> List[CategoryCount]:
        """
        Args:
            mentions: Persisted mentions
            mode: raw or unique_patients
            group_by: diagnostic_category, diagnosis or segment
            family: Only return this family (symptom or problem)

        Returns:
            Rows ordered by family, then count descending, then category
        """
        mode = CountMode(mode)
        if group_by not in GROUP_BY_FIELDS:
            raise ValueError(f"group_by must be one of {GROUP_BY_FIELDS}, got {group_by!r}")

        df = pd.DataFrame(
            [
                {
                    "category": getattr(m, group_by) or UNCATEGORIZED,
                    "family": m.problem_flag.value,
                    "patient_id": m.patient_id,
                }
                for m in mentions
            ],
            columns=["category", "family", "patient_id"],
        )
        if family is not None:
            df = df[df["family"] == ProblemFlag(family).value]
        if df.empty:
            return []

        grouped = df.groupby(["family", "category"])
        if mode == CountMode.RAW:
            counts = grouped.size()
        else:
            counts = grouped["patient_id"].nunique()
        counts = counts.rename("n").reset_index()

        counts["family_total"] = counts.groupby("family")["n"].transform("sum")
        counts["percentage"] = (counts["n"] / counts["family_total"] * 100).round(2)
        counts["family_rank"] = counts["family"].map(FAMILY_ORDER)
        counts = counts.sort_values(
            ["family_rank", "n", "category"], ascending=[True, False, True]
        )

        logger.debug(f"Aggregated {len(df)} mentions into {len(counts)} {group_by} rows ({mode.value})")
        return [
            CategoryCount(
                category=row.category,
                family=ProblemFlag(row.family),
                count=int(row.n),
                percentage=float(row.percentage),
            )
            for row in counts.itertuples(index=False)
        ]


def aggregate(mentions: Iterable[Mention], mode: Union[CountMode, str] = CountMode.RAW, **kwargs) -> List[CategoryCount]:
    return Aggregator().aggregate(mentions, mode, **kwargs)
