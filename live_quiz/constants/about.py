"""Static metadata describing Live Quiz."""

APP_NAME = "Live Quiz"
APP_VERSION = "0.2"
APP_ABOUT_TEXT = (
    "Live Quiz runs timed, teacher-controlled quiz sessions for a class. "
    "Questions are pushed to students as they go live, answers are graded on arrival, "
    "and suspicious client events are counted against a removal threshold."
)

HELP_TEXT = (
    "Question lists can be seeded from a .txt file using the import format:\n\n"
    "Q: What is $30^o$ in radians?\n"
    "A: \\frac{\\pi}{2}\nB: \\frac{\\pi}{6}\nC: \\frac{\\pi}{3}\n"
    "CORRECT: B\nTIMELIMIT: 15\n\n"
    "Q: Capital of France?\n"
    "ANSWER: Paris\nPOINTS: 2\n\n"
    "Q: Explain why the sky is blue.\n"
    "OPEN"
)
