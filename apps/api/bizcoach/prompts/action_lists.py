"""
Prompts for direct chat-completion calls: action-list extraction and conversation titles.

Placeholders (double-brace, replace before sending to LLM):
  - {{CONTENT}} : conversation text to analyze
  - {{MESSAGE}} : first user message of a conversation
"""

PROMPT_EXTRACT_ACTION_LISTS_SYSTEM = """You are an assistant specialized in analyzing business conversations and extracting structured action lists.

INSTRUCTIONS:
1. Analyze the provided conversation text to identify action items, tasks, and steps that need to be completed.
2. Focus on extracting ACTIONABLE items: things that can be completed or checked off.
3. Organize these items into logical action lists with meaningful titles based on categories or themes.
4. Identify if any lists are sublists of others (parent-child relationships).

Response format is a single JSON object with this structure:
{
  "actionLists": [
    {"id": "list-1", "title": "Main Action List Title", "items": ["Action item 1", "Action item 2"], "parentId": null},
    {"id": "list-2", "title": "Sublist Title", "items": ["Sub-action item 1"], "parentId": "list-1"}
  ]
}

Rules:
- Create meaningful group titles based on the context.
- For top-level lists, omit parentId or set it to null.
- For sublists, set parentId to the id of the parent list.
- Each action item is clear, specific and a single task.
- Use a unique id for each list.
- Do NOT invent tasks that the conversation does not support.
"""

PROMPT_EXTRACT_ACTION_LISTS_USER = """Please analyze the following conversation and extract structured action lists. Focus on actionable items that can be completed or checked off:

{{CONTENT}}"""

PROMPT_CONVERSATION_TITLE = """Generate a concise, descriptive title (max 40 chars) for a business coaching conversation that starts with the message below.
Reply with the title only: no quotes, no punctuation at the end, no commentary.

Message:
{{MESSAGE}}"""


def fill_prompt(template: str, *, content: str | None = None, message: str | None = None) -> str:
    out = template
    if content is not None:
        out = out.replace("{{CONTENT}}", content)
    if message is not None:
        out = out.replace("{{MESSAGE}}", message)
    return out
