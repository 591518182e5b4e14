"""Authenticated caller model."""

from pydantic import BaseModel, ConfigDict, Field

from devenv_api.models.common import PlanTier, UserRole


class AuthenticatedUser(BaseModel):
    """Caller identity extracted from a verified access token.

    Users are managed by the surrounding application; this service only
    trusts the claims of tokens it can verify.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    email: str | None = None
    role: UserRole = UserRole.USER
    plan: PlanTier = Field(default=PlanTier.FREE)

    @property
    def is_admin(self) -> bool:
        """Whether the caller may act on environments they do not own."""
        return self.role == UserRole.ADMIN

    @property
    def can_report_progress(self) -> bool:
        """Whether the caller may apply state transitions on behalf of workers."""
        return self.role in {UserRole.WORKER, UserRole.ADMIN}
