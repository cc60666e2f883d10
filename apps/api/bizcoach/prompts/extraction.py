"""
Prompt for the isolated structured-extraction exchange.

Placeholders (double-brace, replace before sending to LLM):
  - {{SECTION_TITLE}} : business-plan section
  - {{SCHEMA_JSON}}   : camelCase field template for the section
  - {{TRANSCRIPT}}    : conversation, oldest first
"""

EXTRACTION_RUN_INSTRUCTIONS = "Extract structured data in JSON format only. Do not add any explanatory text."

PROMPT_EXTRACT_SECTION = """Based on this conversation about the "{{SECTION_TITLE}}" section of a business plan,
extract and structure the information in JSON format with these fields:
{{SCHEMA_JSON}}

IMPORTANT:
- Return ONLY the JSON object without any additional text, explanations, or code formatting.
- Only use information the user or coach explicitly stated in the conversation.
- If information for a field is not available, exclude that field from the JSON.
- Do not add new information. Do not hallucinate. Do not jump to conclusions.

Conversation:
{{TRANSCRIPT}}"""


def fill_prompt(
    template: str,
    *,
    section_title: str | None = None,
    schema_json: str | None = None,
    transcript: str | None = None,
) -> str:
    out = template
    if section_title is not None:
        out = out.replace("{{SECTION_TITLE}}", section_title)
    if schema_json is not None:
        out = out.replace("{{SCHEMA_JSON}}", schema_json)
    if transcript is not None:
        out = out.replace("{{TRANSCRIPT}}", transcript)
    return out
