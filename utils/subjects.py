import re

_WHITESPACE = re.compile(r"\s+")

# First match wins. Each alias is anchored on word boundaries so "Engineering"
# does not become ENGLISH and "Earth and Space" does not become ART.
_ALIASES = (
    (re.compile(r"\bMATH"), "MATH"),
    (re.compile(r"\bSCI(ENCES?)?\b"), "SCIENCE"),
    (re.compile(r"\bENG(LISH)?\b"), "ENGLISH"),
    (re.compile(r"^(P\.?E\.?|PHYSICAL\b.*)$"), "PE"),
    (re.compile(r"\bARTS?\b"), "ART"),
)


def normalize_subject_key(subject: str) -> str:
    """
    Map a subject label to the key used for every subject-scoped state entry.

    "Math", " mathematics " and "MATH 2" all share the MATH key, so a snapshot
    written for one spelling is found by the others and never by another subject.
    Labels matching no alias keep their words, joined by "_".
    """
    if not subject:
        return ""
    s = subject.strip().upper()
    if not s:
        return ""
    for pattern, key in _ALIASES:
        if pattern.search(s):
            return key
    return _WHITESPACE.sub("_", s)


def subjects_match(a: str, b: str) -> bool:
    key = normalize_subject_key(a)
    return bool(key) and key == normalize_subject_key(b)
