"""
Response delivery.

Final post-processing of model output before it reaches the chat platform.
"""

from typing import Protocol, Sequence

DEFAULT_PLACEHOLDER = "[TRUSTEE]"


class Messenger(Protocol):
    """Chat platform reply target."""

    async def send(self, content: str, allowed_role_ids: Sequence[str]) -> None:
        """Send text; only the listed role mentions may notify anyone."""
        ...


def role_mention(role_id: str) -> str:
    return f"<@&{role_id}>"


class ResponseDelivery:
    """Substitutes the privileged-group placeholder and sends replies.

    The mention allow-list for model output holds exactly the privileged
    role, so arbitrary mention markup from the model never pings anyone else.
    """

    def __init__(self, privileged_role_id: str, placeholder: str = DEFAULT_PLACEHOLDER):
        if not privileged_role_id:
            raise ValueError("privileged_role_id is required")
        self.privileged_role_id = str(privileged_role_id)
        self.placeholder = placeholder

    @property
    def allowed_role_ids(self) -> Sequence[str]:
        return (self.privileged_role_id,)

    def substitute(self, text: str) -> str:
        return text.replace(self.placeholder, role_mention(self.privileged_role_id))

    async def finalize(self, text: str, messenger: Messenger) -> str:
        """Substitute placeholders and deliver model output.

        Returns:
            The text as delivered
        """
        content = self.substitute(text)
        await messenger.send(content, self.allowed_role_ids)
        return content

    async def notify(self, text: str, messenger: Messenger) -> None:
        """Deliver a fixed bot notice with no mention permissions."""
        await messenger.send(text, ())
