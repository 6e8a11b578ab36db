from typing import Optional

from .. import models

ROLES = ("admin", "adult", "teen", "child")


def resolve_model(
    explicit: Optional[models.LlmModel],
    pinned: Optional[models.LlmModel],
    active: Optional[models.LlmModel],
) -> Optional[models.LlmModel]:
    """Explicit request beats the conversation's pinned model, which beats the active one.

    Candidates that are not installed are skipped.
    """
    for candidate in (explicit, pinned, active):
        if candidate is not None and candidate.is_installed:
            return candidate
    return None


def model_access_allowed(role: str, safe_mode: bool, model: models.LlmModel) -> bool:
    if role == "admin":
        return True
    if role == "teen" and not model.allow_teen:
        return False
    if role == "child" and not model.allow_child:
        return False
    if role == "adult" and safe_mode and not model.safe_mode_allowed:
        return False
    return True
