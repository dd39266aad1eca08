"""Constants shared by the prompt templates and the structured invoker."""

# Embedded in every system prompt and checked against every model response.
# Seeing it in output means the model was induced to repeat protected content.
SYSTEM_MARKER = "[SYSTEM_MARKER_DO_NOT_REPEAT]"

CORRECTIVE_MESSAGE = (
    "Your previous response was not valid JSON matching the required schema. "
    "Respond ONLY with the specified format."
)

NO_ANSWER_SENTINEL = "[No answer provided]"
NO_MATERIALS_TEXT = "No materials provided."

QUESTIONS_BLOCK = "questions"
RESULTS_BLOCK = "results"
