"""
Intake Vocabulary

Fixed term lists used by the risk scorer:
- Crisis terms (free-text scan)
- Crisis screening questions and the answers that count as affirmative
- Severity vocabulary for text-only symptom descriptions
- Answer keys carrying numeric self-reports
"""

# =============================================================================
# Crisis Detection
# =============================================================================

CRISIS_TERMS: tuple[str, ...] = (
    # Self-harm / suicide
    "suicide",
    "suicidal",
    "kill myself",
    "end my life",
    "ending my life",
    "take my own life",
    "want to die",
    "better off dead",
    "no reason to live",
    "self-harm",
    "self harm",
    "hurt myself",
    "harm myself",
    "cutting myself",
    "overdose",
    # Harm to others
    "hurt someone",
    "kill someone",
    "harm others",
    # Medical emergencies
    "chest pain",
    "can't breathe",
    "cannot breathe",
    "trouble breathing",
    "passing out",
    "seizure",
)

# Questions whose affirmative answer is itself a crisis indicator
CRISIS_SCREEN_KEYS: frozenset[str] = frozenset({
    "self_harm_thoughts",
    "thoughts_of_self_harm",
    "suicidal_thoughts",
    "suicidal_ideation",
    "harm_to_others",
    "thoughts_of_harming_others",
})

AFFIRMATIVE_ANSWERS: frozenset[str] = frozenset({
    "yes",
    "y",
    "true",
    "currently",
    "current",
    "recently",
    "sometimes",
    "often",
    "frequently",
    "daily",
    "always",
})

NEGATIVE_ANSWERS: frozenset[str] = frozenset({
    "no",
    "n",
    "false",
    "never",
    "not at all",
    "none",
    "in the past",
})


# =============================================================================
# Severity
# =============================================================================

# Checked in order: severe wins over moderate
SEVERE_TERMS: tuple[str, ...] = (
    "severe",
    "unbearable",
    "excruciating",
    "debilitating",
    "worst",
    "extreme",
)

MODERATE_TERMS: tuple[str, ...] = (
    "moderate",
    "significant",
    "considerable",
    "persistent",
    "worsening",
)

# Numeric 1-10 symptom self-reports (higher is worse)
SEVERITY_KEYS: frozenset[str] = frozenset({
    "severity",
    "symptom_severity",
    "pain_level",
    "pain_severity",
    "distress_level",
})
SEVERITY_KEY_SUFFIX = "_severity"

# Numeric 1-10 wellbeing self-reports (lower is worse)
MOOD_KEYS: frozenset[str] = frozenset({
    "mood_rating",
    "mood_score",
    "wellbeing_rating",
})


# =============================================================================
# Profile Fields Collected on the Intake Form
# =============================================================================

CONDITION_KEYS: tuple[str, ...] = ("conditions", "primary_concern", "diagnoses")
MEDICATION_KEYS: tuple[str, ...] = ("medications", "current_medications")
CHRONIC_CONDITION_KEYS: tuple[str, ...] = ("chronic_conditions",)
MISSED_APPOINTMENT_KEYS: tuple[str, ...] = ("missed_appointments",)
AGE_KEYS: tuple[str, ...] = ("age",)


def is_severity_key(key: str) -> bool:
    """True if the answer key carries a numeric symptom-severity report."""
    return key in SEVERITY_KEYS or key.endswith(SEVERITY_KEY_SUFFIX)
