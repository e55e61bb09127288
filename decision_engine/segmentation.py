"""User segmentation, cohort management and audience targeting."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from decision_engine.callbacks import CallbackRegistry
from decision_engine.errors import DefinitionError, format_validation_errors
from decision_engine.operators import MISSING, compare, get_field_value
from models.schemas import (
    Cohort,
    Segment,
    SegmentCondition,
    SegmentRule,
    TargetingRule,
    UserProfile,
    utcnow,
)

ATTRIBUTE_CATEGORIES = ("user", "company", "behavior")


def validate_segment(segment: Segment) -> list[str]:
    """Definition errors for a segment (empty when valid)."""
    if not segment.rules:
        return ["Segment must have at least one rule"]
    return [
        f"Rule {index} has no conditions and would match every user"
        for index, rule in enumerate(segment.rules)
        if not rule.conditions
    ]


class SegmentationEngine:
    """
    Keeps user profiles, segment definitions and cohorts in memory.

    Segment membership is derived: it is recomputed whenever a profile's
    attributes or cohorts change and whenever a segment is (re)defined.
    Cohort membership is authoritative and only changes through the cohort
    operations.
    """

    def __init__(
        self,
        callbacks: CallbackRegistry | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.callbacks = callbacks if callbacks is not None else CallbackRegistry(self.logger)
        self._profiles: dict[str, UserProfile] = {}
        self._segments: dict[str, Segment] = {}
        self._cohorts: dict[str, Cohort] = {}

    # =========================================================================
    # Profiles
    # =========================================================================

    def _get_or_create_profile(self, user_id: str) -> UserProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            profile = UserProfile(user_id=user_id, user={"user_id": user_id})
            self._profiles[user_id] = profile
        return profile

    def get_profile(self, user_id: str) -> UserProfile | None:
        return self._profiles.get(user_id)

    def get_all_profiles(self) -> list[UserProfile]:
        return list(self._profiles.values())

    def set_profile(self, user_id: str, patch: Mapping[str, Any]) -> UserProfile:
        """
        Shallow-merge attribute bags into a profile and reclassify the user.

        `patch` may carry `user`, `company`, `behavior` and `metadata` bags.
        Segment and cohort ids are not accepted here: segments are derived
        and cohorts change through the cohort operations.
        """
        profile = self._get_or_create_profile(user_id)
        for key in ("segments", "cohorts"):
            if key in patch:
                self.logger.debug("Ignoring %r in profile patch for %s", key, user_id)

        for category in (*ATTRIBUTE_CATEGORIES, "metadata"):
            values = patch.get(category)
            if values:
                bag = getattr(profile, category)
                bag.update(values)

        self._evaluate_user_segments(profile)
        return profile

    def update_attributes(
        self, user_id: str, category: str, attributes: Mapping[str, Any]
    ) -> UserProfile:
        """Merge attributes into one category bag (user, company or behavior)."""
        if category not in ATTRIBUTE_CATEGORIES:
            raise ValueError(f"Unknown attribute category: {category!r}")
        return self.set_profile(user_id, {category: attributes})

    def update_user_attributes(self, user_id: str, attributes: Mapping[str, Any]) -> UserProfile:
        return self.update_attributes(user_id, "user", attributes)

    def update_company_attributes(
        self, user_id: str, attributes: Mapping[str, Any]
    ) -> UserProfile:
        return self.update_attributes(user_id, "company", attributes)

    def update_behavior_attributes(
        self, user_id: str, attributes: Mapping[str, Any]
    ) -> UserProfile:
        return self.update_attributes(user_id, "behavior", attributes)

    def track_event(self, user_id: str, event_name: str) -> None:
        """Record that a known user triggered an event (each name once)."""
        profile = self._profiles.get(user_id)
        if profile is None:
            return

        events = profile.behavior.setdefault("events_triggered", [])
        if event_name not in events:
            events.append(event_name)
            self._evaluate_user_segments(profile)

    def track_feature_usage(self, user_id: str, feature_name: str) -> None:
        """Increment a known user's usage counter for a feature."""
        profile = self._profiles.get(user_id)
        if profile is None:
            return

        usage = profile.behavior.setdefault("feature_usage", {})
        usage[feature_name] = usage.get(feature_name, 0) + 1
        self._evaluate_user_segments(profile)

    # =========================================================================
    # Segments
    # =========================================================================

    def define_segment(self, segment: Segment | Mapping[str, Any]) -> Segment:
        """Validate and store a segment, then reclassify every known profile."""
        segment = self._parse_segment(segment)
        errors = validate_segment(segment)
        if errors:
            raise DefinitionError("; ".join(errors), "segment", segment.id, errors)

        self._segments[segment.id] = segment
        self._rescan_segment(segment)
        self.logger.info(
            "Segment %s defined (%d rules, enabled=%s)",
            segment.id,
            len(segment.rules),
            segment.enabled,
        )
        return segment

    def _parse_segment(self, segment: Segment | Mapping[str, Any]) -> Segment:
        if isinstance(segment, Segment):
            return segment.model_copy(deep=True)
        try:
            return Segment.model_validate(segment)
        except ValidationError as e:
            errors = format_validation_errors(e)
            raise DefinitionError(
                "; ".join(errors), "segment", str(segment.get("id") or ""), errors
            ) from e

    def get_segment(self, segment_id: str) -> Segment | None:
        return self._segments.get(segment_id)

    def get_all_segments(self) -> list[Segment]:
        """Segments by descending priority, then id."""
        return sorted(self._segments.values(), key=lambda s: (-s.priority, s.id))

    def set_segment_enabled(self, segment_id: str, enabled: bool) -> bool:
        segment = self._segments.get(segment_id)
        if segment is None:
            return False
        segment.enabled = enabled
        self._rescan_segment(segment)
        return True

    def remove_segment(self, segment_id: str) -> None:
        self._segments.pop(segment_id, None)
        for profile in self._profiles.values():
            profile.segments.discard(segment_id)

    def get_user_segments(self, user_id: str) -> list[str]:
        """Matched segment ids for a user, highest priority first."""
        profile = self._profiles.get(user_id)
        if profile is None:
            return []
        return [s.id for s in self.get_all_segments() if s.id in profile.segments]

    def _rescan_segment(self, segment: Segment) -> None:
        for profile in self._profiles.values():
            if segment.enabled and self._matches_segment(segment, profile):
                profile.segments.add(segment.id)
            else:
                profile.segments.discard(segment.id)

    def _evaluate_user_segments(self, profile: UserProfile) -> None:
        profile.segments = {
            segment.id
            for segment in self._segments.values()
            if segment.enabled and self._matches_segment(segment, profile)
        }

    def _matches_segment(self, segment: Segment, profile: UserProfile) -> bool:
        return any(self._matches_rule(rule, profile) for rule in segment.rules)

    def _matches_rule(self, rule: SegmentRule, profile: UserProfile) -> bool:
        results = (self._matches_condition(c, profile) for c in rule.conditions)
        if rule.logic == "OR":
            return any(results)
        return all(results)

    def _matches_condition(self, condition: SegmentCondition, profile: UserProfile) -> bool:
        if condition.type == "cohort":
            in_cohort = condition.value in profile.cohorts
            if condition.operator in ("equals", "in"):
                return in_cohort
            if condition.operator in ("notEquals", "notIn"):
                return not in_cohort
            return False

        bag = getattr(profile, condition.type, None)
        actual = get_field_value(bag, condition.field) if bag is not None else MISSING
        return compare(condition.operator, actual, condition.value)

    # =========================================================================
    # Cohorts
    # =========================================================================

    def create_cohort(
        self,
        cohort_id: str,
        name: str = "",
        description: str | None = None,
        user_ids: list[str] | set[str] | None = None,
    ) -> Cohort:
        if cohort_id in self._cohorts:
            raise DefinitionError("Cohort already exists", "cohort", cohort_id)

        cohort = Cohort(id=cohort_id, name=name or cohort_id, description=description)
        self._cohorts[cohort_id] = cohort
        for user_id in user_ids or ():
            self.add_user_to_cohort(cohort_id, user_id)
        return cohort

    def get_cohort(self, cohort_id: str) -> Cohort | None:
        return self._cohorts.get(cohort_id)

    def get_all_cohorts(self) -> list[Cohort]:
        return list(self._cohorts.values())

    def add_user_to_cohort(self, cohort_id: str, user_id: str) -> bool:
        """Add a member and mirror it on the profile; returns False for unknown cohorts."""
        cohort = self._cohorts.get(cohort_id)
        if cohort is None:
            self.logger.warning("Cannot add %s to unknown cohort %s", user_id, cohort_id)
            return False

        cohort.user_ids.add(user_id)
        cohort.updated_at = utcnow()

        profile = self._get_or_create_profile(user_id)
        if cohort_id not in profile.cohorts:
            profile.cohorts.add(cohort_id)
            self._evaluate_user_segments(profile)
        return True

    def remove_user_from_cohort(self, cohort_id: str, user_id: str) -> bool:
        cohort = self._cohorts.get(cohort_id)
        if cohort is None:
            self.logger.warning("Cannot remove %s from unknown cohort %s", user_id, cohort_id)
            return False

        cohort.user_ids.discard(user_id)
        cohort.updated_at = utcnow()

        profile = self._profiles.get(user_id)
        if profile is not None and cohort_id in profile.cohorts:
            profile.cohorts.discard(cohort_id)
            self._evaluate_user_segments(profile)
        return True

    def is_user_in_cohort(self, cohort_id: str, user_id: str) -> bool:
        cohort = self._cohorts.get(cohort_id)
        return cohort is not None and user_id in cohort.user_ids

    def get_cohort_users(self, cohort_id: str) -> list[str]:
        cohort = self._cohorts.get(cohort_id)
        return sorted(cohort.user_ids) if cohort else []

    def remove_cohort(self, cohort_id: str) -> None:
        cohort = self._cohorts.pop(cohort_id, None)
        if cohort is None:
            return
        for user_id in cohort.user_ids:
            profile = self._profiles.get(user_id)
            if profile is not None:
                profile.cohorts.discard(cohort_id)
                self._evaluate_user_segments(profile)

    # =========================================================================
    # Targeting
    # =========================================================================

    def evaluate_targeting(self, user_id: str, rule: TargetingRule | Mapping[str, Any]) -> bool:
        """
        Decide whether a user falls inside a targeting rule.

        Exclusions veto first; each non-empty inclusion list then needs at
        least one match; a registered custom predicate must also agree.
        Unknown users are never targeted.
        """
        if not isinstance(rule, TargetingRule):
            rule = TargetingRule.model_validate(rule)

        profile = self._profiles.get(user_id)
        if profile is None:
            return False

        if any(s in profile.segments for s in rule.exclude_segments):
            return False
        if any(c in profile.cohorts for c in rule.exclude_cohorts):
            return False

        if rule.segments and not any(s in profile.segments for s in rule.segments):
            return False
        if rule.cohorts and not any(c in profile.cohorts for c in rule.cohorts):
            return False

        if rule.custom_logic_id:
            return self.callbacks.check(rule.custom_logic_id, profile)

        return True

    def get_users_matching_targeting(self, rule: TargetingRule | Mapping[str, Any]) -> list[str]:
        return sorted(
            user_id for user_id in self._profiles if self.evaluate_targeting(user_id, rule)
        )

    # =========================================================================
    # Analytics
    # =========================================================================

    def get_segment_size(self, segment_id: str) -> int:
        return sum(1 for p in self._profiles.values() if segment_id in p.segments)

    def get_cohort_size(self, cohort_id: str) -> int:
        cohort = self._cohorts.get(cohort_id)
        return len(cohort.user_ids) if cohort else 0

    def get_segment_distribution(self) -> dict[str, int]:
        return {s.id: self.get_segment_size(s.id) for s in self.get_all_segments()}

    def get_segment_overlap(self, segment_id_1: str, segment_id_2: str) -> int:
        return sum(
            1
            for p in self._profiles.values()
            if segment_id_1 in p.segments and segment_id_2 in p.segments
        )

    # =========================================================================
    # Data Export
    # =========================================================================

    def export_data(self) -> dict[str, Any]:
        """Plain JSON-compatible snapshot of profiles, segments and cohorts."""
        return {
            "profiles": [p.model_dump(mode="json") for p in self._profiles.values()],
            "segments": [s.model_dump(mode="json") for s in self.get_all_segments()],
            "cohorts": [c.model_dump(mode="json") for c in self._cohorts.values()],
        }

    def clear_data(self) -> None:
        self._profiles.clear()
        self._segments.clear()
        self._cohorts.clear()
