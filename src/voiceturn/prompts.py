"""Prompt helpers for the routing classifiers and the answer responder."""

from __future__ import annotations


def assistant_system_prompt(mode: str) -> str:
    """Return the responder system prompt for text, vision or recall answers."""
    base = (
        "You are a voice assistant running on smart glasses. Answers are spoken aloud and shown "
        "on a tiny display, so keep them to one or two short sentences with no markdown."
    )
    if mode == "vision":
        return (
            f"{base} The attached photo is what the user is looking at right now; "
            "answer about it directly and do not describe the photo unless asked."
        )
    if mode == "recall":
        return (
            f"{base} The user is asking about the earlier conversation. "
            "Answer only from the conversation history provided."
        )
    return (
        f"{base} If the question cannot be answered without seeing what the user is looking at, "
        "set needs_visual_context to true."
    )


def memory_instructions() -> str:
    return (
        "Decide whether the user's query refers to the earlier conversation (recall), asks to repeat "
        "the previous camera question with a new photo (retry), or is a new request (continue). "
        "Questions about what is running or active right now are always continue."
    )


def tool_instructions() -> str:
    return (
        "Decide whether the user's query needs one of the installed apps or tools to act or to fetch "
        "the user's own data (tool), or can be answered from general knowledge (no_tool)."
    )


def vision_instructions() -> str:
    return (
        "Decide whether answering the user's query needs a photo of what they are looking at right now. "
        "Answer yes when it clearly does, no when it clearly does not, unsure otherwise."
    )


def affirmative_instructions() -> str:
    return (
        "The assistant just answered the user. Decide whether the user's reply only acknowledges or closes "
        "the exchange (yes), e.g. 'ok thanks' or 'got it', or is anything else (no). 'No thanks' is no."
    )


def disambiguation_instructions() -> str:
    return (
        "Decide whether the assistant's answer asks the user to choose between named options, such as apps. "
        "If it does, list the option names exactly as written, in the order given."
    )


def classifier_user_prompt(instructions: str, text: str, context: dict[str, str]) -> str:
    blocks = [instructions]
    for key, value in context.items():
        if value:
            blocks.append(f"{key.replace('_', ' ').capitalize()}:\n{value}")
    blocks.append(f'Query: "{text}"')
    return "\n\n".join(blocks)
