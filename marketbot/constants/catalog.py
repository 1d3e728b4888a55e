"""Fixed product category enumeration (callback data carries the index)."""

CATEGORIES = (
    "Academic Books",
    "Electronics",
    "Clothes & Fashion",
    "Furniture & Home",
    "Study Materials",
    "Entertainment",
    "Food & Drinks",
    "Transportation",
    "Accessories",
    "Others",
)

# Contact-admin topics: callback key -> label
CONTACT_TOPICS = {
    "report_issue": "Report Issue",
    "give_suggestion": "Give Suggestion",
    "urgent_help": "Urgent Help",
    "general_question": "General Question",
}
