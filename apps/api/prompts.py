# prompts.py


def compose_prompt(user_prompt: str, extracted_text: str) -> str:
    """
    Merge the user's prompt with text pulled out of an attachment.

    With no extracted text the prompt comes back untouched, which image
    generation relies on.
    """
    if not extracted_text:
        return user_prompt

    return (
        f"{user_prompt}\n"
        "\n"
        "=== ATTACHED FILE ===\n"
        f"{extracted_text}\n"
        "=== END FILE ==="
    )
