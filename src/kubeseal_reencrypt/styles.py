"""Styling for the questionary prompts shown before a run starts.

Only the context picker and the mutation confirmation are interactive,
so the palette covers select and confirm prompts.
"""

from questionary import Style

PROMPT_STYLE = Style(
    [
        ("qmark", "fg:#d7af00 bold"),  # Amber question mark
        ("question", "bold"),
        ("answer", "fg:#5fd7ff bold"),
        ("pointer", "fg:#5fd7ff bold"),
        ("highlighted", "fg:#1c1c1c bg:#5fd7ff bold"),
        ("instruction", "fg:#6c6c6c italic"),
        ("text", ""),
    ]
)

POINTER = "❯ "
QMARK = "? "
