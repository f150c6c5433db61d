"""Coachmem algorithm constants.

Deployment-tunable values (thresholds, limits, timeouts) live in
coachmem.config. The values here are fixed implementation details of the
scoring, detection and consolidation algorithms.
"""

# =============================================================================
# Memory categories and detection
# =============================================================================

CATEGORIES = (
    "preferences",
    "personal_context",
    "instructions",
    "food_diet",
    "goals",
)

# Explicit "remember this" requests bypass classification
EXPLICIT_TRIGGER_PATTERNS = (
    r"\b(?:please\s+)?make sure (?:you|to) remember\s+(?:that\s+)?(?P<content>.+)",
    r"\b(?:please\s+)?remember\s+(?:that\s+)?(?P<content>.+)",
    r"\b(?:please\s+)?(?:don'?t|do not) forget\s+(?:that\s+)?(?P<content>.+)",
    r"\b(?:please\s+)?keep in mind\s+(?:that\s+)?(?P<content>.+)",
    r"\b(?:please\s+)?(?:note|save)\s+(?:that|this)\s*:?\s+(?P<content>.+)",
)
EXPLICIT_IMPORTANCE = 0.9
EXPLICIT_CONFIDENCE = 0.95

# Keyword patterns for the heuristic classifier: (category, importance, patterns)
DETECTION_PATTERNS = (
    (
        "goals",
        0.9,
        (
            r"\bmy goal\b",
            r"\bi want to (?:lose|gain|build|run|improve|get|reach)\b",
            r"\bi(?:'m| am) (?:trying|training|working) (?:to|for)\b",
            r"\btarget\b",
            r"\bmarathon\b",
        ),
    ),
    (
        "food_diet",
        0.8,
        (
            r"\ballergic to\b",
            r"\ballergy\b",
            r"\bintoleran(?:t|ce)\b",
            r"\bi (?:don'?t|do not|never|can'?t|cannot) eat\b",
            r"\bi(?:'m| am) (?:a )?(?:vegan|vegetarian|pescatarian|keto)\b",
            r"\b(?:diet|calories|protein|meal|breakfast|lunch|dinner)\b",
        ),
    ),
    (
        "instructions",
        0.7,
        (
            r"\balways\b",
            r"\bnever (?:suggest|recommend|mention|tell)\b",
            r"\bplease (?:don'?t|do not|stop|avoid)\b",
            r"\b(?:call me|talk to me|explain)\b",
        ),
    ),
    (
        "personal_context",
        0.6,
        (
            r"\binjur(?:y|ed)\b",
            r"\bmy (?:knee|back|shoulder|ankle|doctor|job|work|family|wife|husband|partner|kids?)\b",
            r"\bi work (?:as|at|from)\b",
            r"\bi (?:have|suffer from) (?:a |an )?\w+",
            r"\bi(?:'m| am) \d+ years old\b",
            r"\b(?:sleep|stress|anxiety|diabetes|asthma|pregnan\w*)\b",
        ),
    ),
    (
        "preferences",
        0.6,
        (
            r"\bi (?:prefer|like|love|enjoy|hate|dislike)\b",
            r"\bmy favou?rite\b",
            r"\bi(?:'d| would) rather\b",
        ),
    ),
)

# =============================================================================
# Deduplication
# =============================================================================

SEMANTIC_HASH_DIMS = 16
SEMANTIC_HASH_PRECISION = 2
HASH_LENGTH = 16
DEDUP_CANDIDATE_LIMIT = 20

# Words signalling that a statement replaces an earlier one
TEMPORAL_UPDATE_MARKERS = (
    "actually",
    "now",
    "anymore",
    "any more",
    "instead",
    "no longer",
    "switched",
    "changed",
    "these days",
    "from now on",
)

CONTRACTIONS = {
    "i'm": "i am",
    "i've": "i have",
    "i'd": "i would",
    "i'll": "i will",
    "don't": "do not",
    "doesn't": "does not",
    "didn't": "did not",
    "can't": "cannot",
    "won't": "will not",
    "isn't": "is not",
    "aren't": "are not",
    "it's": "it is",
    "that's": "that is",
    "you're": "you are",
    "we're": "we are",
    "they're": "they are",
}

# =============================================================================
# Retrieval scoring
# =============================================================================

SEMANTIC_WEIGHT = 0.45
TEMPORAL_WEIGHT = 0.15
CONTEXTUAL_WEIGHT = 0.25
GRAPH_WEIGHT = 0.15

# Per-day exponential decay rates by declared temporal context
TEMPORAL_DECAY_RATES = {
    "immediate": 0.2,
    "recent": 0.1,
    "historical": 0.02,
}
CREATION_AGE_WEIGHT = 0.6
ACCESS_AGE_WEIGHT = 0.4
ACCESS_BONUS_PER_USE = 0.02
ACCESS_BONUS_CAP = 0.1
ACCESS_BONUS_WINDOW_DAYS = 30

CONTEXT_BASE_SCORE = 0.5
MODE_MATCH_BOOST = 0.2
TOPIC_MATCH_BOOST = 0.2
INTENT_MATCH_BOOST = 0.3

COACHING_MODE_KEYWORDS = {
    "fitness": ("workout", "exercise", "gym", "training", "fitness", "run", "strength"),
    "nutrition": ("food", "diet", "meal", "nutrition", "calories", "eat", "allerg"),
    "wellness": ("sleep", "stress", "mental", "wellness", "health", "recovery"),
    "general": ("goal", "progress", "motivation", "habit"),
}
COACHING_MODE_CATEGORIES = {
    "fitness": ("goals",),
    "nutrition": ("food_diet",),
    "wellness": ("personal_context",),
    "general": (),
}
INTENT_KEYWORDS = {
    "question": ("?", "how", "what", "when", "where", "why"),
    "goal_setting": ("goal", "target", "aim", "objective", "want to"),
    "progress_check": ("progress", "achievement", "result", "improvement"),
    "advice_seeking": ("advice", "suggestion", "recommendation", "help", "prefer"),
}
INTENT_CATEGORIES = {
    "goal_setting": ("goals",),
    "progress_check": ("goals",),
    "advice_seeking": ("preferences", "instructions"),
}

# Adaptive relevance threshold
BASE_RELEVANCE_THRESHOLD = 0.35
SPECIFICITY_ADJUSTMENT = 0.08
HIGH_SPECIFICITY = 0.7
LOW_SPECIFICITY = 0.3
SPECIFIC_QUERY_TERMS = 6
SHORT_SESSION_LENGTH = 3
SHORT_SESSION_PENALTY = 0.05
LONG_SESSION_LENGTH = 10
LONG_SESSION_RELIEF = 0.05
VERY_LONG_SESSION_LENGTH = 25
VERY_LONG_SESSION_RELIEF = 0.03
THRESHOLD_FLOOR = 0.05
THRESHOLD_CEILING = 0.9

# Number of provisional top scorers that define the graph neighbourhood
GRAPH_NEIGHBOURHOOD_SIZE = 10

# Per-score levels above which a reason tag is attached
HIGH_SEMANTIC_LEVEL = 0.7
RECENT_ACTIVITY_LEVEL = 0.7
CONTEXTUAL_MATCH_LEVEL = 0.7
GRAPH_CONNECTION_LEVEL = 0.3

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "do", "does",
        "for", "from", "has", "have", "how", "i", "if", "in", "into", "is",
        "it", "its", "me", "my", "of", "on", "or", "so", "that", "the",
        "their", "them", "then", "there", "these", "this", "to", "was",
        "we", "what", "when", "where", "which", "who", "why", "will", "with",
        "you", "your", "am", "can", "should", "would", "could", "about",
        "any", "some", "like", "just", "get", "got", "really", "very",
    }
)

# =============================================================================
# Consolidation
# =============================================================================

# Maximum superseded_by hops followed before giving up
MAX_SUPERSEDE_DEPTH = 10

# Maximum planning rounds in one consolidation sweep
MAX_CONSOLIDATION_ROUNDS = 10

# Retrieval calls kept for latency percentiles
RETRIEVAL_STATS_WINDOW = 200
