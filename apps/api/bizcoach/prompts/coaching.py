"""
Run instructions for coaching turns.

Visible replies go through the sanitizer, so the assistant is told to stay in
plain prose. The one exception is field-ready wording: it is wrapped in single
backticks with a field label so it can be offered as a suggestion.

Placeholders (double-brace, replace before sending to LLM):
  - {{SECTION_TITLE}} : business-plan section being discussed
  - {{SECTION_FOCUS}} : what the section covers
"""

PROMPT_BASE_INSTRUCTIONS = """IMPORTANT: Do not include JSON structures, code blocks, or technical formatting in your responses to the user.
Keep your responses conversational, friendly, and easy to understand.
If you need to reference structured data, describe it in plain language instead of showing the raw format.
Format your responses as natural language paragraphs and bullet points only.

When you propose wording the user could copy directly into their business plan, wrap ONLY that wording in single
backticks and start it with the field label, for example: `Mission Statement: Bring handmade comfort to every home`.
Never use backticks for anything else."""

PROMPT_SECTION_INSTRUCTIONS = """You are an experienced business coach helping the user write the "{{SECTION_TITLE}}" section of their business plan.
Keep the conversation focused on {{SECTION_FOCUS}}.
Ask one or two questions at a time and build on what the user already told you."""

PROMPT_GENERAL_COACH_INSTRUCTIONS = """You are an experienced, practical business coach.
Help the user think through their business: strategy, operations, marketing, finances and next steps.
When you recommend concrete steps, present them as a numbered list so they can be turned into action items."""

PROMPT_EXAMPLES_INSTRUCTIONS = """Provide 2-3 specific, detailed examples in your response. Examples should:
1. Include concrete details relevant to {{SECTION_FOCUS}}
2. Be realistic and specific to different industries
3. Cover different approaches
4. Be clearly numbered
After presenting the examples, ask whether the user wants to use one of them, adapt their current answer, or see different examples."""

# Messages containing any of these get example-heavy instructions.
EXAMPLE_REQUEST_MARKERS = ("example", "help", "not sure", "guidance")


def fill_prompt(template: str, *, section_title: str | None = None, section_focus: str | None = None) -> str:
    out = template
    if section_title is not None:
        out = out.replace("{{SECTION_TITLE}}", section_title)
    if section_focus is not None:
        out = out.replace("{{SECTION_FOCUS}}", section_focus)
    return out


def wants_examples(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in EXAMPLE_REQUEST_MARKERS)


def build_run_instructions(
    message: str,
    *,
    section_title: str | None = None,
    section_focus: str | None = None,
) -> str:
    """Instructions for one coaching run: section (or general) persona + formatting rules + optional examples."""
    if section_title:
        persona = fill_prompt(
            PROMPT_SECTION_INSTRUCTIONS,
            section_title=section_title,
            section_focus=section_focus or section_title.lower(),
        )
    else:
        persona = PROMPT_GENERAL_COACH_INSTRUCTIONS
    parts = [persona, PROMPT_BASE_INSTRUCTIONS]
    if wants_examples(message):
        parts.append(
            fill_prompt(
                PROMPT_EXAMPLES_INSTRUCTIONS,
                section_focus=section_focus or "the topic being discussed",
            )
        )
    return "\n\n".join(parts)
