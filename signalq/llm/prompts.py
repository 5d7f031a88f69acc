"""
Prompt templates for the three Gemini call shapes.

Templates use str.format placeholders; builders handle the optional parts
(existing summary, tone reference) so callers never format by hand.
"""

from __future__ import annotations

TONE_REFERENCE_CHARS = 1500

SUMMARY_COMPRESSION_TEMPLATE = """You are maintaining a rolling summary of a team chat conversation.

{current_block}New messages since last summary:
\"\"\"
{pending}
\"\"\"

Task: Create an updated summary that:
1. {merge_instruction}
2. Keeps key decisions, insights, open questions, and action items
3. Removes greetings, off-topic banter, and redundancy
4. Maximum {max_words} words
5. Focus on "why" and "what" - skip "who said"

Return ONLY the new summary, no explanation."""

WORTHINESS_TEMPLATE = """You are a content scout reviewing an internal team conversation.

Decide whether it contains material worth turning into a public post by a founder or operator.

CONVERSATION:
\"\"\"
{conversation}
\"\"\"

Worth sharing:
- A non-obvious insight about product, customers, or business
- A decision with interesting reasoning
- A lesson learned from a failure or success
- A contrarian or surprising perspective

NOT worth sharing:
- Small talk, scheduling, logistics
- Debugging sessions or routine technical Q&A
- Sensitive or confidential information
- Complaints without a constructive angle

Respond with ONLY valid JSON in this exact shape:
{{
  "worthy": true or false,
  "confidence": number between 0.0 and 1.0,
  "topic": "Short topic if worthy",
  "summary": "2-3 sentence summary of the insight if worthy",
  "suggested_angle": "1-2 sentences on how to frame it as a post"
}}

Be conservative: when uncertain, set worthy to false."""

CONTENT_TEMPLATE = """You write concise, high-signal posts for {platform}.

TOPIC: {topic}

INSIGHT SUMMARY: {summary}

{tone_block}Write the post:
- Hook on the first line
- One idea per line, short sentences
- Close with a specific question or a reframe
- No hashtags, at most one emoji
- Stay under {char_limit} characters

Return only the post text."""


def summary_compression_prompt(current_summary: str, pending: str, max_words: int) -> str:
    has_summary = bool(current_summary and current_summary.strip())
    current_block = f'Current summary:\n"""{current_summary}"""\n\n' if has_summary else ""
    merge_instruction = (
        "Merges the current summary with the new messages"
        if has_summary
        else "Summarizes the new messages"
    )
    return SUMMARY_COMPRESSION_TEMPLATE.format(
        current_block=current_block,
        pending=pending,
        merge_instruction=merge_instruction,
        max_words=max_words,
    )


def worthiness_prompt(conversation_text: str) -> str:
    return WORTHINESS_TEMPLATE.format(conversation=conversation_text)


def content_prompt(topic: str, summary: str, raw_text: str, platform: str, char_limit: int) -> str:
    tone_block = ""
    if raw_text:
        tone_block = (
            "ORIGINAL CONVERSATION (for tone reference):\n"
            f"{raw_text[:TONE_REFERENCE_CHARS]}\n\n---\n\n"
        )
    return CONTENT_TEMPLATE.format(
        platform=platform,
        topic=topic,
        summary=summary,
        tone_block=tone_block,
        char_limit=char_limit,
    )
