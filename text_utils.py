"""
Text helpers shared by the local code extractor and the local theme labeler:
sentence splitting, tokenization with stopword / noise filtering, and term counting.
"""
import re
from collections import Counter
from typing import Iterable, List, Sequence, Tuple

MIN_WORD_LENGTH = 3  # tokens must be longer than this
MIN_SENTENCE_LENGTH = 20  # characters

STOP_WORDS = frozenset([
    # Articles & determiners
    "the", "a", "an",
    # Conjunctions
    "and", "or", "but", "nor", "yet", "so",
    # Prepositions
    "in", "on", "at", "to", "for", "of", "with", "by", "from", "as",
    "into", "through", "during", "before", "after", "above", "below",
    "between", "under", "about", "against", "among", "around", "behind",
    "within", "without", "across", "toward", "towards", "upon",
    # Pronouns
    "i", "you", "he", "she", "it", "we", "they", "them", "their", "this",
    "that", "these", "those", "my", "your", "his", "her", "its", "our",
    # be / have / do
    "is", "am", "are", "was", "were", "been", "being", "be",
    "have", "has", "had", "having",
    "do", "does", "did", "doing",
    # Modals
    "will", "would", "should", "could", "may", "might", "must", "can",
    # Common adverbs & adjectives
    "also", "very", "just", "only", "even", "such", "more", "most",
    "some", "any", "all", "both", "each", "few", "many", "much",
    "other", "another", "same", "own", "however", "therefore", "thus",
    # Interrogatives
    "which", "who", "whom", "whose", "what", "when", "where", "why", "how",
    # Negation & quantifiers
    "not", "no", "none", "nothing", "neither", "than", "too",
    # Time & location
    "now", "then", "once", "again", "further", "here", "there",
    # Boilerplate of generated code descriptions
    "pattern", "identified", "frequency", "analysis",
])

# Domain terms kept even though they look like noise (digits, short acronyms)
RESEARCH_TERM_WHITELIST = frozenset([
    "covid-19", "covid19", "sars-cov-2", "long-covid",
    "h1n1", "h5n1", "h7n9", "hiv-1", "hiv-2",
    "p-value", "alpha-level", "t-test", "f-test", "z-test",
    "r-squared", "chi-square", "chi2", "anova", "ancova", "manova",
    "meta-analysis", "meta-analytic", "rct", "n-of-1",
    "mrna", "dna", "rna", "crispr", "cas9",
    "ml", "ai", "nlp", "llm", "gpt", "gpt-3", "gpt-4", "bert",
    "vr", "ar", "xr", "iot", "api", "sdk",
    "2d", "3d", "4d", "5d", "5g", "6g", "wi-fi",
    "type-1", "type-2",
])

_RE_PURE_NUMBER = re.compile(r"^\d+$")
_RE_COMPLEX_ABBREV = re.compile(r"^[a-z]+-\d+-[a-z]+$", re.IGNORECASE)
_RE_LONG_ACRONYM = re.compile(r"^[A-Z]{7,}$")
_RE_HTML_ENTITY = re.compile(r"^&[#\w]+;?$")
_RE_HAS_ALNUM = re.compile(r"[a-z0-9]", re.IGNORECASE)
_RE_NON_WORD = re.compile(r"[^\w\s-]")


def split_into_sentences(text: str, min_length: int = 0) -> List[str]:
    """
    Split text into sentences on . ! ? (punctuation kept).

    Args:
        text: Input text to split
        min_length: Drop sentences shorter than this many characters

    Returns:
        List of stripped sentences
    """
    if not text or not str(text).strip():
        return []
    t = re.sub(r"\s+", " ", str(text).strip())
    sentences = re.split(r"(?<=[.!?])\s+", t)
    return [s.strip() for s in sentences if s.strip() and len(s.strip()) >= min_length]


def is_noise_word(word: str) -> bool:
    """Numbers, digit-heavy tokens, instrument codes, HTML entities and similar artifacts."""
    if not word:
        return True
    if word.lower() in RESEARCH_TERM_WHITELIST:
        return False
    if _RE_PURE_NUMBER.match(word):
        return True
    digits = sum(ch.isdigit() for ch in word)
    if digits / len(word) > 0.5:
        return True
    if _RE_COMPLEX_ABBREV.match(word):
        return True
    if _RE_LONG_ACRONYM.match(word):
        return True
    if _RE_HTML_ENTITY.match(word):
        return True
    if len(word) == 1:
        return True
    return not _RE_HAS_ALNUM.search(word)


def tokenize(text: str) -> List[str]:
    """Lowercase content tokens: stopwords, short tokens and noise removed."""
    if not text:
        return []
    out: List[str] = []
    for raw in _RE_NON_WORD.sub(" ", str(text)).split():
        # Noise rules look at the original casing (long acronyms)
        if is_noise_word(raw):
            continue
        w = raw.lower().strip("-_")
        if w in RESEARCH_TERM_WHITELIST:
            out.append(w)
            continue
        if len(w) <= MIN_WORD_LENGTH or w in STOP_WORDS:
            continue
        out.append(w)
    return out


def rank_terms(tokens: Iterable[str], limit: int) -> List[Tuple[str, int]]:
    """Top terms by frequency; ties broken alphabetically so output is deterministic."""
    counts = Counter(tokens)
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return ranked[: max(0, int(limit))]


def bigrams(tokens: Sequence[str]) -> List[str]:
    return [f"{tokens[i]} {tokens[i + 1]}" for i in range(len(tokens) - 1)]


def title_case(phrase: str) -> str:
    return " ".join(w[:1].upper() + w[1:] for w in phrase.split(" ") if w)
