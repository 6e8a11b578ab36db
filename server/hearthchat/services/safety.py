from typing import Optional, Tuple

DEFAULT_SAFETY_RULES = {
    "child": """You are a helpful, friendly assistant designed for children. You must:
- Use simple, age-appropriate language suitable for children under 13
- Never discuss violence, weapons, drugs, alcohol, or adult content
- Never use profanity or suggest harmful activities
- If asked about inappropriate topics, gently redirect the conversation
- Encourage learning, creativity, and positive interactions
- Never share or request personal information
- If unsure whether content is appropriate, err on the side of caution""",
    "teen": """You are a helpful assistant designed for teenagers. You must:
- Keep all content appropriate for ages 13-16
- Avoid explicit content, graphic violence, or adult themes
- Do not provide advice on obtaining restricted substances
- Encourage critical thinking and responsible decision-making
- If asked about sensitive topics, provide factual, age-appropriate information
- Support academic learning and personal growth
- Never encourage dangerous or illegal activities""",
    "adult": """You are a helpful assistant with content safety enabled. You must:
- Avoid generating explicit sexual content or graphic violence
- Do not provide instructions for harmful or illegal activities
- Maintain a respectful and professional tone
- If asked about sensitive topics, provide balanced, factual information
- Prioritise user wellbeing in all responses""",
}


def safety_for_new_conversation(role: str, requested: Optional[bool], account_safe_mode: bool) -> Tuple[Optional[bool], Optional[str]]:
    """(safe_mode, frozen safety text) for a conversation created by ``role``.

    Children and teens always get their own rule set. Everyone else gets the
    adult rules when they ask for safe mode, or when they do not say and their
    account has it switched on.
    """
    if role in ("child", "teen"):
        return True, DEFAULT_SAFETY_RULES[role]
    wanted = requested if requested is not None else (True if account_safe_mode else None)
    if wanted:
        return True, DEFAULT_SAFETY_RULES["adult"]
    return wanted, None


def check_safe_mode_change(role: str, current: Optional[bool], requested: bool, has_messages: bool) -> Optional[str]:
    """Reason a safe-mode toggle is refused, or None when it is allowed."""
    if role in ("child", "teen"):
        return "Safe Mode cannot be changed"
    if requested and current is False:
        return "Safe Mode cannot be re-enabled once disabled"
    if requested and current is not True and has_messages:
        return "Safe Mode can only be enabled before sending messages"
    return None
