"""Pure builder for relevance-scored archive queries.

``build_search_query`` produces a parameterized Presto/Athena statement plus
everything an engine needs to run it. ``score_text`` computes the same score
in Python so local evaluation ranks exactly like the SQL.

Score, summed per row against the lowercased term:
  whole     whole_match_weight when the term is bounded by start/end or
            a non-word character
  substring min(substring_weight * occurrences of the full term, substring_cap)
  words     min(word_weight * sum of occurrences of each term word, word_cap)
"""

import re
from dataclasses import dataclass, field

from src.codecs import partition_values
from src.models import Category

COLUMN_SPEC = (
    ("timestamp", "bigint"),
    ("category", "string"),
    ("messages", "json"),
    ("stacktrace", "json"),
    ("archivekey", "string"),
    ("score", "integer"),
)

# Non-overlapping occurrences of a parameter in searchtext.
OCCURRENCES = "((length(searchtext) - length(replace(searchtext, ?, ''))) / length(?))"


@dataclass(frozen=True)
class Weights:
    whole_match: int = 100
    substring: int = 10
    substring_cap: int = 50
    word: int = 3
    word_cap: int = 30

    @classmethod
    def from_config(cls, config) -> "Weights":
        return cls(
            whole_match=config.whole_match_weight,
            substring=config.substring_weight,
            substring_cap=config.substring_cap,
            word=config.word_weight,
            word_cap=config.word_cap,
        )


@dataclass(frozen=True)
class ScoredQuery:
    sql: str
    params: tuple
    category: Category
    term: str
    words: tuple
    start: int
    end: int
    limit: int
    partition_filter: tuple = ()
    weights: Weights = field(default_factory=Weights)
    column_spec: tuple = COLUMN_SPEC


def normalize_term(term: str) -> str:
    return " ".join((term or "").lower().split())


def whole_match_regex(term: str) -> str:
    """Java/Presto regex for a bounded whole-term match."""
    return r"(^|[^\p{L}\p{N}_])" + re.escape(term) + r"($|[^\p{L}\p{N}_])"


def _whole_match(text: str, term: str) -> bool:
    return re.search(r"(?:^|\W)" + re.escape(term) + r"(?:$|\W)", text) is not None


def score_text(text: str, term: str, weights: Weights = Weights()) -> int:
    term = normalize_term(term)
    if not term:
        return 0
    text = text.lower()
    score = 0
    if _whole_match(text, term):
        score += weights.whole_match
    score += min(weights.substring * text.count(term), weights.substring_cap)
    word_hits = sum(text.count(w) for w in term.split())
    score += min(weights.word * word_hits, weights.word_cap)
    return score


def partition_filter(start: int, end: int) -> tuple:
    """(column, low, high) bounds: year always, month/day only inside one period."""
    sy, sm, sd, _ = partition_values(start)
    ey, em, ed, _ = partition_values(end)
    bounds = [("year", sy, ey)]
    if sy == ey:
        bounds.append(("month", sm, em))
        if sm == em:
            bounds.append(("day", sd, ed))
    return tuple(bounds)


def build_search_query(category: Category, term: str, start: int, end: int, limit: int,
                       weights: Weights = Weights(), database: str = "circle_logs",
                       table: str = "entries") -> ScoredQuery:
    term = normalize_term(term)
    words = tuple(term.split())
    params: list = [whole_match_regex(term), term, term]

    word_terms = []
    for w in words:
        word_terms.append(OCCURRENCES)
        params.extend([w, w])

    bounds = partition_filter(start, end)
    where = ["category = ?"]
    params.append(category.value)
    for column, low, high in bounds:
        if low == high:
            where.append(f"{column} = ?")
            params.append(low)
        else:
            where.append(f"{column} BETWEEN ? AND ?")
            params.extend([low, high])
    where.append("timestamp BETWEEN ? AND ?")
    params.extend([int(start), int(end)])

    word_sum = " + ".join(word_terms) or "0"
    sql = (
        "SELECT timestamp, category, messages, stacktrace, archivekey, score FROM (\n"
        "  SELECT timestamp, category,\n"
        "    json_format(CAST(messages AS JSON)) AS messages,\n"
        "    json_format(CAST(stacktrace AS JSON)) AS stacktrace,\n"
        "    archivekey,\n"
        f"    (CASE WHEN regexp_like(searchtext, ?) THEN {int(weights.whole_match)} ELSE 0 END)\n"
        f"    + LEAST({int(weights.substring)} * "
        f"{OCCURRENCES}, "
        f"{int(weights.substring_cap)})\n"
        f"    + LEAST({int(weights.word)} * ({word_sum}), {int(weights.word_cap)}) AS score\n"
        f'  FROM "{database}"."{table}"\n'
        f"  WHERE {' AND '.join(where)}\n"
        ") WHERE score > 0\n"
        "ORDER BY score DESC, timestamp DESC\n"
        f"LIMIT {int(limit)}"
    )
    return ScoredQuery(
        sql=sql,
        params=tuple(params),
        category=category,
        term=term,
        words=words,
        start=int(start),
        end=int(end),
        limit=int(limit),
        partition_filter=bounds,
        weights=weights,
    )
