"""Business coaching API: conversation sessions, structured plan sections, action items."""
