from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .models import MAX_PATTERN_LENGTH, MIN_PATTERN_LENGTH, Predicate


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


def _recency(alias: str) -> str:
    return f"(1.0 / (1.0 + (julianday(?) - julianday({alias}.updated_at)) / ?))"


@dataclass(frozen=True, slots=True)
class PathTemplate:
    """A chained join over ``triples`` following an ordered predicate sequence.

    ``t1.object = t2.subject``, ``t2.object = t3.subject`` and so on; every
    hop is constrained to its predicate and to the same agent. The template
    only builds SQL and parameters, execution is left to the caller.
    """

    predicates: tuple[str, ...]

    @classmethod
    def of(cls, predicates: Sequence[Any]) -> "PathTemplate":
        """Validated constructor. Raises ``ValueError`` on bad length or predicate."""
        if not (MIN_PATTERN_LENGTH <= len(predicates) <= MAX_PATTERN_LENGTH):
            raise ValueError(
                f"path template needs {MIN_PATTERN_LENGTH}-{MAX_PATTERN_LENGTH} predicates, got {len(predicates)}"
            )
        out = []
        for p in predicates:
            parsed = Predicate.parse(p)
            if parsed is None:
                raise ValueError(f"unknown predicate: {p!r}")
            out.append(parsed.value)
        return cls(tuple(out))

    def __len__(self) -> int:
        return len(self.predicates)

    @property
    def last(self) -> str:
        return f"t{len(self.predicates)}"

    def _joins(self, agent_id: str) -> tuple[str, list[Any]]:
        parts = ["FROM triples t1"]
        params: list[Any] = []
        for i, pred in enumerate(self.predicates[1:], start=2):
            parts.append(
                f"JOIN triples t{i} ON t{i}.subject = t{i - 1}.object"
                f" AND t{i}.predicate = ? AND t{i}.agent_id = ?"
            )
            params.extend([pred, agent_id])
        return "\n".join(parts), params

    def _confidence_product(self) -> str:
        return " * ".join(f"t{i}.confidence" for i in range(1, len(self.predicates) + 1))

    def match_sql(self, seeds: Sequence[str], agent_id: str, weight: float, limit: int) -> tuple[str, list[Any]]:
        """Paths starting at any of ``seeds``; one row per path with its exchange and score.

        score = product of traversed confidences x ``weight``; the exchange is
        the one that produced the final hop.
        """
        joins, join_params = self._joins(agent_id)
        sql = f"""
            SELECT {self.last}.source_exchange_id AS source_exchange_id,
                   {self._confidence_product()} * ? AS score
            {joins}
            WHERE t1.subject IN ({_placeholders(len(seeds))})
              AND t1.predicate = ?
              AND t1.agent_id = ?
              AND {self.last}.source_exchange_id IS NOT NULL
            LIMIT ?
        """
        params: list[Any] = [weight, *join_params, *seeds, self.predicates[0], agent_id, limit]
        return sql, params

    def reachable_pairs_sql(
        self, agent_id: str, now: str, horizon_days: float, sample_size: int
    ) -> tuple[str, list[Any]]:
        """Distinct (src, dst) endpoint pairs with their best recency-weighted path confidence."""
        joins, join_params = self._joins(agent_id)
        n = len(self.predicates)
        recency = " * ".join(_recency(f"t{i}") for i in range(1, n + 1))
        sql = f"""
            SELECT t1.subject AS src, {self.last}.object AS dst,
                   MAX({self._confidence_product()} * {recency}) AS path_conf
            {joins}
            WHERE t1.predicate = ?
              AND t1.agent_id = ?
              AND t1.subject <> {self.last}.object
            GROUP BY t1.subject, {self.last}.object
            LIMIT ?
        """
        # recency placeholders appear in the SELECT list, before the joins
        params: list[Any] = []
        for _ in range(n):
            params.extend([now, float(horizon_days)])
        params.extend([*join_params, self.predicates[0], agent_id, sample_size])
        return sql, params
