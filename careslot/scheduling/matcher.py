"""Preference matching between candidate slots and waitlist entries."""

from collections.abc import Iterable

from careslot.scheduling.models import CandidateSlot, TimeBand, WaitlistEntry


class SlotMatcher:
    """Filters candidate slots down to those a waiting patient would accept.

    Stateless and side-effect free. Relaxing preferences is never done here;
    callers that want the unfiltered list ask for it explicitly.
    """

    def matches(self, candidate: CandidateSlot, entry: WaitlistEntry) -> bool:
        if entry.preferred_weekdays and candidate.weekday not in entry.preferred_weekdays:
            return False
        band = entry.preferred_time_band
        if band is not None and band is not TimeBand.ANY:
            return band.contains_hour(candidate.start.hour)
        return True

    def filter_slots(
        self,
        candidates: Iterable[CandidateSlot],
        entry: WaitlistEntry,
    ) -> list[CandidateSlot]:
        return [c for c in candidates if self.matches(c, entry)]
