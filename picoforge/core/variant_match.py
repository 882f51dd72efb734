"""Device-identity-to-profile matching logic."""

from __future__ import annotations

from picoforge.core.model import DeviceIdentity, VariantProfile


def _mcu_match(identity: DeviceIdentity, profile: VariantProfile) -> bool:
    return identity.mcu in profile.match.mcu


def _product_match(identity: DeviceIdentity, profile: VariantProfile) -> bool:
    return identity.product in profile.match.product


def match_score(identity: DeviceIdentity, profile: VariantProfile) -> int:
    # A product match is required; the MCU only narrows it down.
    if not _product_match(identity, profile):
        return 0
    if _mcu_match(identity, profile):
        return 2
    if not profile.match.mcu:
        return 1
    return 0


def best_profile_for_identity(
    identity: DeviceIdentity, profiles: dict[str, VariantProfile]
) -> VariantProfile | None:
    best: VariantProfile | None = None
    best_score = 0
    for profile in profiles.values():
        score = match_score(identity, profile)
        if score > best_score:
            best = profile
            best_score = score
    return best
