"""Keyword classifier used when the analyzer could not name an error type."""

from clew.persistence.models import Category

# Checked in order; first hit wins
KEYWORD_RULES: list[tuple[Category, tuple[str, ...]]] = [
    (
        Category.DEPENDENCY,
        (
            "cannot find module",
            "module not found",
            "modulenotfounderror",
            "importerror",
            "npm",
            "package",
        ),
    ),
    (Category.ASYNC, ("timeout", "promise", "async", "await")),
    (Category.LOGIC, ("typeerror", "cannot read property", "undefined", "null")),
    (Category.SYNTAX, ("syntaxerror", "unexpected token")),
]


def classify(message: str | None, analyzer_classification: Category | str | None = None) -> Category:
    """
    Classify an error message.

    A known analyzer classification is trusted as-is; otherwise the
    message is matched against keyword rules.
    """
    if analyzer_classification is not None:
        category = Category.parse(analyzer_classification)
        if category != Category.UNKNOWN:
            return category

    if not message:
        return Category.UNKNOWN

    text = message.lower()
    for category, keywords in KEYWORD_RULES:
        if any(keyword in text for keyword in keywords):
            return category
    return Category.UNKNOWN
