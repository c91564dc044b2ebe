from cadence.services.feed_service import CalendarFeed, build_subscription_feed
from cadence.services.series_service import (
    ExtensionResult,
    MusicSelection,
    RegenerationResult,
    RoleSlot,
    SeriesNotFoundError,
    convert_to_single_event,
    create_series_with_occurrences,
    delete_series,
    edit_occurrence,
    extend_all_series,
    extend_series,
    regenerate_future_occurrences,
    update_series_definition,
)

__all__ = [
    "CalendarFeed",
    "ExtensionResult",
    "MusicSelection",
    "RegenerationResult",
    "RoleSlot",
    "SeriesNotFoundError",
    "build_subscription_feed",
    "convert_to_single_event",
    "create_series_with_occurrences",
    "delete_series",
    "edit_occurrence",
    "extend_all_series",
    "extend_series",
    "regenerate_future_occurrences",
    "update_series_definition",
]
