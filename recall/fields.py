"""
Embeddable columns and their human-readable labels.

The labels are the questions shown on the session and cycle forms; they
travel with field jobs so search results can say which question an answer
belongs to.
"""

SESSION_PLAN_FIELDS = {
    "plan_objective": "What am I trying to accomplish?",
    "plan_importance": "Why is this important and valuable?",
    "plan_done_definition": "How will I know this is complete?",
    "plan_hazards": "Any risks / hazards? (Potential distractions, procrastination, etc.)",
    "plan_misc_notes": "Anything else noteworthy?",
}

SESSION_REVIEW_FIELDS = {
    "review_accomplishments": "What did I get done in this session?",
    "review_comparison": "How did this compare to my normal work output?",
    "review_obstacles": "Did I get bogged down? Where?",
    "review_successes": "What went well? How can I replicate this in the future?",
    "review_takeaways": "Any other takeaways? Lessons to share with others?",
}

CYCLE_PLAN_FIELDS = {
    "plan_goal": "What am I trying to accomplish this cycle?",
    "plan_first_step": "How will I get started?",
    "plan_hazards_cycle": "Any hazards present?",
}

CYCLE_REVIEW_FIELDS = {
    "review_noteworthy": "Anything noteworthy?",
    "review_distractions": "Any distractions?",
    "review_improvement": "Things to improve for next cycle?",
}

FIELD_LABELS = {
    **SESSION_PLAN_FIELDS,
    **SESSION_REVIEW_FIELDS,
    **CYCLE_PLAN_FIELDS,
    **CYCLE_REVIEW_FIELDS,
}


def get_field_label(column: str) -> str:
    """Label for a column, falling back to the column name itself."""
    return FIELD_LABELS.get(column, column)


def field_type(column: str | None) -> str:
    """Coarse kind of a field: planning, review, or other."""
    if not column:
        return "other"
    if column.startswith("plan_"):
        return "planning"
    if column.startswith("review_"):
        return "review"
    return "other"
