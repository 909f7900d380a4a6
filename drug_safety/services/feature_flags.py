from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol

from ..config import Settings


@dataclass(frozen=True)
class FlagSnapshot:
    """Flag values captured once at the start of a call."""

    interaction_check_enabled: bool
    allergy_check_enabled: bool
    drug_suggestions_enabled: bool


class FeatureFlagSource(Protocol):
    def snapshot(self) -> FlagSnapshot: ...


class SettingsFeatureFlags:
    """Reads flags from settings on every call so runtime toggles are picked up."""

    def __init__(self, settings_provider: Callable[[], Settings]) -> None:
        self._settings_provider = settings_provider

    def snapshot(self) -> FlagSnapshot:
        settings = self._settings_provider()
        return FlagSnapshot(
            interaction_check_enabled=settings.interaction_check_enabled,
            allergy_check_enabled=settings.allergy_check_enabled,
            drug_suggestions_enabled=settings.drug_suggestions_enabled,
        )


class StaticFeatureFlags:
    """Mutable flag holder, handy for admin toggles and tests."""

    def __init__(
        self,
        *,
        interaction_check_enabled: bool = True,
        allergy_check_enabled: bool = True,
        drug_suggestions_enabled: bool = True,
    ) -> None:
        self.interaction_check_enabled = interaction_check_enabled
        self.allergy_check_enabled = allergy_check_enabled
        self.drug_suggestions_enabled = drug_suggestions_enabled

    def snapshot(self) -> FlagSnapshot:
        return FlagSnapshot(
            interaction_check_enabled=self.interaction_check_enabled,
            allergy_check_enabled=self.allergy_check_enabled,
            drug_suggestions_enabled=self.drug_suggestions_enabled,
        )
