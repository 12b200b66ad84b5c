import json
from typing import Any, Dict, List, Optional

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from models.resolution import Candidate
from services.datadog_service import DataDogService
from utils.config import ActiveConfig
from utils.exceptions import ProviderError
from utils.logger import logger

AI_RANKING_TEMPLATE = """You compare a user's reference to an entity with existing records.

Reference: "{identifier}"

Records (JSON):
{records}

Score every record from 0 to 100 for how likely it is the same entity.
Respond with a JSON array only: [{{"id": <record id>, "score": <0-100>}}, ...]"""


def _word_overlap(a: str, b: str) -> float:
    words_a = set(a.split())
    words_b = set(b.split())
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / max(len(words_a), len(words_b)) * 100


class AIRankingHook:
    """Re-scores heuristic candidates with the completion provider."""

    def __init__(self, completer):
        self.completer = completer
        logger.debug("Initialized AIRankingHook")

    def score(self, identifier: str, candidates: List[Candidate]) -> Dict[str, int]:
        """
        Ask the provider for a score per candidate id.

        Returns:
            dict: str(candidate id) -> score clamped to 0..100

        Raises:
            ProviderError: If the reply is missing, malformed or names unknown ids
        """
        records = [{"id": c.id, **{k: v for k, v in c.fields.items() if k != "id"}} for c in candidates]
        prompt = AI_RANKING_TEMPLATE.format(identifier=identifier, records=json.dumps(records, default=str))
        reply = self.completer.complete_json(prompt)
        if not isinstance(reply, list):
            raise ProviderError("AI ranking reply is not a list")

        known = {str(c.id) for c in candidates}
        scores = {}
        for entry in reply:
            if not isinstance(entry, dict) or str(entry.get("id")) not in known:
                raise ProviderError(f"AI ranking returned an unknown record: {entry}")
            try:
                score = int(float(entry.get("score")))
            except (TypeError, ValueError):
                raise ProviderError(f"AI ranking returned a non-numeric score: {entry}")
            scores[str(entry["id"])] = max(0, min(100, score))
        return scores


class DuplicateRanker:
    """Scores entity-store records against a free-text identifier."""

    def __init__(self, threshold: int = None, top_k: int = None, ai_hook: Optional[AIRankingHook] = None):
        """
        Initialize the ranker.

        Args:
            threshold (int, optional): Minimum score kept. Defaults to ActiveConfig.DUPLICATE_SCORE_THRESHOLD.
            top_k (int, optional): Maximum candidates returned. Defaults to ActiveConfig.DUPLICATE_TOP_K.
            ai_hook (AIRankingHook, optional): Provider-backed re-scoring, used when set
        """
        self.threshold = threshold if threshold is not None else ActiveConfig.DUPLICATE_SCORE_THRESHOLD
        self.top_k = top_k if top_k is not None else ActiveConfig.DUPLICATE_TOP_K
        self.ai_hook = ai_hook
        logger.debug(f"Initialized DuplicateRanker (threshold={self.threshold}, top_k={self.top_k})")

    @staticmethod
    def calculate_similarity(search: str, target: str) -> int:
        """
        Composite similarity between two strings.

        The score is the best of: exact (100), case-insensitive exact (95),
        containment of the search term in the target (85), normalized
        Levenshtein similarity, character overlap and word-set overlap.

        Character overlap is rapidfuzz's fuzz.ratio: twice the number of
        characters the two strings share in order, over their combined
        length, as a percentage. It credits transpositions that Levenshtein
        counts as two edits ("abc" vs "cab" is 66 rather than 33).

        Args:
            search (str): User-supplied identifier
            target (str): Stored field value

        Returns:
            int: Score in 0..100
        """
        if search and search == target:
            return 100
        search = (search or "").strip()
        target = (target or "").strip()
        if not search or not target:
            return 0
        if search == target:
            return 100

        a = search.lower()
        b = target.lower()
        if a == b:
            return 95

        scores = [
            Levenshtein.normalized_similarity(a, b) * 100,
            fuzz.ratio(a, b),
            _word_overlap(a, b),
        ]
        if a in b:
            scores.append(85)
        return max(0, min(100, int(max(scores))))

    def score_record(self, identifier: str, record: Dict[str, Any], search_fields: List[str]) -> Candidate:
        """Best field score of one record, as a Candidate."""
        best_score = 0
        best_field = None
        for field in search_fields:
            value = record.get(field)
            if value in (None, ""):
                continue
            score = self.calculate_similarity(str(identifier), str(value))
            if score > best_score:
                best_score = score
                best_field = field
        return Candidate(id=record.get("id"), fields=record, similarity_score=best_score, matched_field=best_field)

    def rank(self, identifier: str, records: List[Dict[str, Any]], search_fields: List[str]) -> List[Candidate]:
        """
        Rank records as duplicate candidates for an identifier.

        Args:
            identifier (str): User-supplied identifier
            records (list): Wide-net search hits
            search_fields (list): Fields compared against the identifier

        Returns:
            list: Candidates scoring at least the threshold, best first, at most top_k
        """
        candidates = [self.score_record(identifier, record, search_fields) for record in records]
        if self.ai_hook is not None and candidates:
            try:
                scores = self.ai_hook.score(identifier, candidates)
                candidates = [
                    c.model_copy(update={"similarity_score": scores[str(c.id)]})
                    for c in candidates if str(c.id) in scores
                ]
            except ProviderError as e:
                logger.warning(f"AI ranking failed, using heuristic scores: {e}")
                DataDogService.increment_metric("entity_resolution.provider_fallback", tags={"component": "ranker"})

        kept = [c for c in candidates if c.similarity_score >= self.threshold]
        kept.sort(key=lambda c: c.similarity_score, reverse=True)
        logger.info(f"Ranked {len(records)} record(s) for '{identifier}', kept {min(len(kept), self.top_k)}")
        return kept[:self.top_k]
