"""
Consent coordinator — classifies an app registration and drives the prompt sequence.

    NEW        no grants for this origin     init prompt -> consent dialog -> store grants
    UPDATE     manifest asks for new scopes  consent dialog -> store existing + granted
    NO_CHANGE  manifest within grants        no prompt

Grants the manifest no longer asks for are left in place.

Depends on: errors, models, permissions, prompts
"""

import sys
from dataclasses import dataclass, field

from vibeagent.errors import ConsentDeniedError, ValidationError
from vibeagent.models import AppManifest, ConsentRequest, PermissionSetting, Scenario
from vibeagent.permissions import PermissionStore, coerce_setting, validate_scope
from vibeagent.prompts import PromptPort


def missing_scopes(requested: list[str], existing: dict) -> list[str]:
    """Requested scopes not covered by existing grants, in manifest order."""
    seen = set()
    missing = []
    for scope in requested:
        if scope not in existing and scope not in seen:
            missing.append(scope)
            seen.add(scope)
    return missing


def classify_scenario(requested: list[str], existing: dict) -> Scenario:
    if not existing:
        return Scenario.NEW
    if missing_scopes(requested, existing):
        return Scenario.UPDATE
    return Scenario.NO_CHANGE


@dataclass
class ConsentOutcome:
    scenario: Scenario
    grants: dict[str, PermissionSetting] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.scenario is not Scenario.NO_CHANGE


class ConsentCoordinator:

    def __init__(self, permissions: PermissionStore, prompts: PromptPort):
        self._permissions = permissions
        self.prompts = prompts

    async def run(self, did: str, origin: str, manifest: AppManifest) -> ConsentOutcome:
        """Bring the origin's grants up to date with the manifest, prompting as needed.

        Raises ConsentDeniedError if the user declines the consent dialog,
        in which case nothing is persisted.
        """
        requested = list(manifest.permissions)
        existing = self._permissions.get_origin_permissions(did, origin)
        scenario = classify_scenario(requested, existing)
        print(f"[VibeAgent] Consent for {origin} ({manifest.app_id}): {scenario.value}", file=sys.stderr)

        if scenario is Scenario.NO_CHANGE:
            return ConsentOutcome(scenario=scenario, grants=existing)

        if scenario is Scenario.NEW:
            await self.prompts.request_init_prompt(manifest)
            request = ConsentRequest(
                manifest=manifest,
                origin=origin,
                requested_permissions=requested,
                existing_permissions={},
                new_permissions=requested,
            )
            grants = self._validate(await self.prompts.request_consent(request), requested)
        else:
            request = ConsentRequest(
                manifest=manifest,
                origin=origin,
                requested_permissions=requested,
                existing_permissions=dict(existing),
                new_permissions=missing_scopes(requested, existing),
            )
            granted = self._validate(await self.prompts.request_consent(request), requested)
            grants = {**existing, **granted}

        self._permissions.set_origin_permissions(did, origin, grants)
        return ConsentOutcome(scenario=scenario, grants=grants)

    @staticmethod
    def _validate(raw, requested: list[str]) -> dict[str, PermissionSetting]:
        if raw is None:
            raise ConsentDeniedError("User denied consent request.")
        if not isinstance(raw, dict):
            raise ValidationError(f"Consent handler returned {type(raw).__name__}, expected a dict of grants")
        grants = {}
        for scope, value in raw.items():
            if scope not in requested:
                print(f"[VibeAgent] Ignoring grant for unrequested scope {scope}", file=sys.stderr)
                continue
            grants[validate_scope(scope)] = coerce_setting(value)
        return grants
