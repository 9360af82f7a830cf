import logging
from collections import defaultdict
from typing import Sequence

from .scoring import ScoredCandidate

logger = logging.getLogger(__name__)

_EVIDENCE_PHRASES = {
    'favorite': 'you loved',
    'rewatched': 'you keep coming back to',
    'watched': 'you watched',
}


def _join_titles(titles: list[str]) -> str:
    quoted = [f'"{t}"' for t in titles]
    if len(quoted) <= 1:
        return ''.join(quoted)
    return ', '.join(quoted[:-1]) + f' and {quoted[-1]}'


class TemplateExplanationGenerator:
    """
    Builds short "because you watched..." explanations from the evidence
    rows of a run and the candidate's strongest score components.
    """

    def generate(
        self,
        user_id: str,
        media_kind: str,
        selected: Sequence[ScoredCandidate],
        evidence: Sequence[dict],
    ) -> dict[str, str]:
        by_candidate: dict[str, list[dict]] = defaultdict(list)
        for row in evidence:
            by_candidate[row['candidate_item_id']].append(row)

        explanations = {}
        for sc in selected:
            explanations[sc.item_id] = self.explain(sc, by_candidate.get(sc.item_id, []))
        logger.debug(f"Generated {len(explanations)} explanations for {user_id} ({media_kind})")
        return explanations

    def explain(self, sc: ScoredCandidate, evidence: Sequence[dict]) -> str:
        parts = []
        if evidence:
            strongest = sorted(evidence, key=lambda e: -e['similarity'])
            kind = strongest[0]['evidence_type']
            titles = [e.get('evidence_title') or e['evidence_item_id'] for e in strongest]
            parts.append(f"Because {_EVIDENCE_PHRASES.get(kind, 'you watched')} {_join_titles(titles)}.")
        else:
            parts.append("Close to your overall taste.")

        if sc.franchise and sc.franchise_boost > 1.0:
            parts.append(f"Part of {sc.franchise}, a franchise you enjoy.")
        if sc.interest_boost > 1.0:
            parts.append("Matches one of your stated interests.")
        if sc.candidate.community_rating is not None and sc.rating_score >= 0.75:
            parts.append(f"Highly rated ({sc.candidate.community_rating:.1f}/10).")
        if sc.novelty_score >= 0.75 and sc.genres:
            parts.append(f"Something different: {', '.join(sc.genres[:2])}.")
        return ' '.join(parts)
