from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from .event_queue import EventQueue

logger = logging.getLogger("regdesk.client")

FUNNEL_STEPS = (
    "page_load",
    "hero_view",
    "puzzle_view",
    "puzzle_start",
    "puzzle_complete",
    "tournament_view",
    "form_view",
    "form_start",
    "form_submit",
)

SECTION_FUNNEL_STEPS = {
    "home": "hero_view",
    "puzzle": "puzzle_view",
    "tournament": "tournament_view",
    "contact": "form_view",
}

SCROLL_MILESTONES = (10, 25, 50, 75, 90, 100)

PERFORMANCE_METRICS = ("LCP", "FID", "CLS")

FORM_FIELD_ORDER = (
    "team_name",
    "team_city",
    "team_country",
    "captain_first_name",
    "captain_last_name",
    "captain_email",
    "captain_phone",
    "captain_birth_date",
    "from_province",
    "players_count",
    "notes",
    "privacy_accepted",
    "rules_accepted",
)


class SessionTracker:
    """Turns page interactions into analytics events for one visitor session.

    Routine events go through the queue; puzzle and form milestones that feed
    the conversion funnel are sent immediately.
    """

    def __init__(self, queue: EventQueue, monotonic: Callable[[], float] = time.monotonic) -> None:
        self.queue = queue
        self._monotonic = monotonic
        self.session_start = monotonic()
        self.funnel = {step: False for step in FUNNEL_STEPS}
        self.scroll_milestones: set[int] = set()
        self.clicked_sections: set[str] = set()
        self.puzzle_clicks = 0
        self.puzzle_start_time: Optional[float] = None
        self.form_start_time: Optional[float] = None
        self._last_field_index = -1
        self._ended = False

    @property
    def session_id(self) -> str:
        return self.queue.session_id

    @property
    def ended(self) -> bool:
        return self._ended

    def time_on_page_ms(self) -> int:
        return int((self._monotonic() - self.session_start) * 1000)

    def _elapsed_since_ms(self, started: Optional[float]) -> int:
        return int((self._monotonic() - (started if started is not None else self.session_start)) * 1000)

    def track_page_view(
        self,
        page: str,
        referrer: Optional[str] = None,
        screen_width: Optional[int] = None,
        screen_height: Optional[int] = None,
    ) -> None:
        self.funnel["page_load"] = True
        self.queue.enqueue(
            "pageview",
            {"page": page, "referrer": referrer, "screenWidth": screen_width, "screenHeight": screen_height},
        )

    def view_section(self, section_id: str) -> bool:
        step = SECTION_FUNNEL_STEPS.get(section_id)
        if step is None or self.funnel[step]:
            return False
        self.funnel[step] = True
        self.queue.enqueue("event", {"category": "Section", "action": "View", "label": section_id, "funnel": step})
        self.queue.enqueue(
            "event",
            {"category": "Timing", "action": "Section Reached", "label": section_id, "value": self.time_on_page_ms()},
        )
        return True

    def update_scroll(self, percent: float) -> list[int]:
        reached = []
        for milestone in SCROLL_MILESTONES:
            if percent >= milestone and milestone not in self.scroll_milestones:
                self.scroll_milestones.add(milestone)
                reached.append(milestone)
                self.queue.enqueue(
                    "event",
                    {"category": "Engagement", "action": "Scroll Depth", "label": f"{milestone}%", "value": milestone},
                )
        return reached

    def click_section(self, section_id: str) -> bool:
        if not section_id or section_id in self.clicked_sections:
            return False
        self.clicked_sections.add(section_id)
        self.queue.enqueue("event", {"category": "Click", "action": "Section First Click", "label": section_id})
        return True

    async def puzzle_click(self, piece: Optional[int] = None) -> None:
        self.puzzle_clicks += 1
        if self.puzzle_clicks == 1:
            self.puzzle_start_time = self._monotonic()
            self.funnel["puzzle_start"] = True
            await self.queue.send_immediate("puzzle", {"action": "start"})
            self.queue.enqueue("event", {"category": "Puzzle", "action": "Start", "label": "First Piece Click"})

        self.queue.enqueue(
            "event",
            {
                "category": "Puzzle",
                "action": "Piece Click",
                "label": f"Piece {piece if piece is not None else self.puzzle_clicks}",
                "value": self.puzzle_clicks,
            },
        )

    async def puzzle_complete(self) -> bool:
        if self.funnel["puzzle_complete"]:
            return False
        self.funnel["puzzle_complete"] = True
        completion_time = self._elapsed_since_ms(self.puzzle_start_time)
        await self.queue.send_immediate(
            "puzzle",
            {"action": "complete", "completionTime": completion_time, "totalClicks": self.puzzle_clicks},
        )
        self.queue.enqueue(
            "event",
            {"category": "Puzzle", "action": "Complete", "label": f"{round(completion_time / 1000)}s", "value": completion_time},
        )
        self.queue.enqueue("event", {"category": "Achievement", "action": "Puzzle Completed", "value": completion_time})
        return True

    async def form_focus(self, field: str) -> None:
        if not self.funnel["form_start"]:
            self.funnel["form_start"] = True
            self.form_start_time = self._monotonic()
            await self.queue.send_immediate("form", {"action": "start"})
            self.queue.enqueue("event", {"category": "Form", "action": "Start", "label": field})

        index = FORM_FIELD_ORDER.index(field) if field in FORM_FIELD_ORDER else -1
        if index > self._last_field_index:
            self._last_field_index = index
            self.queue.enqueue("event", {"category": "Form", "action": "Field Focus", "label": field, "value": index + 1})

    def form_field_abandoned(self, field: str) -> None:
        if self.funnel["form_start"]:
            self.queue.enqueue("event", {"category": "Form", "action": "Field Abandoned", "label": field})

    async def form_error(self, field: str) -> None:
        await self.queue.send_immediate("form", {"action": "error", "field": field})
        self.queue.enqueue("event", {"category": "Form", "action": "Validation Error", "label": field})

    async def form_submit(self) -> None:
        self.funnel["form_submit"] = True
        completion_time = self._elapsed_since_ms(self.form_start_time)
        await self.queue.send_immediate("form", {"action": "submit"})
        self.queue.enqueue(
            "event",
            {"category": "Form", "action": "Submit", "label": "Form Submitted", "value": completion_time},
        )
        self.queue.enqueue("event", {"category": "Achievement", "action": "Form Submitted", "value": completion_time})

    def track(self, category: str, action: str, label: Optional[str] = None, value: Optional[float] = None) -> None:
        self.queue.enqueue("event", {"category": category, "action": action, "label": label, "value": value})

    async def track_conversion(self, name: str, value: Optional[float] = None) -> bool:
        return await self.queue.send_immediate("event", {"category": "Conversion", "action": name, "value": value})

    def track_error(self, message: str, source: str = "custom") -> None:
        self.queue.enqueue("event", {"category": "Error", "action": source, "label": message})

    def track_page_load(self, timings: dict[str, float]) -> None:
        """Report navigation timings in ms; ``pageLoadTime`` becomes the event value."""
        self.queue.enqueue(
            "event",
            {
                "category": "Performance",
                "action": "Page Load",
                "label": "Metrics",
                "value": timings.get("pageLoadTime"),
                "metrics": dict(timings),
            },
        )

    def track_performance(self, metric: str, value: float) -> None:
        """Report one Core Web Vital.

        LCP and FID are milliseconds. CLS is the raw layout-shift score; it is
        scaled by 1000 and sent as a beacon since it is only final when the
        page is hidden.
        """
        metric = metric.upper()
        if metric not in PERFORMANCE_METRICS:
            raise ValueError(f"unknown performance metric: {metric}")
        if metric == "CLS":
            payload = {"category": "Performance", "action": "CLS", "value": round(value * 1000)}
            self.queue.send_beacon("event", payload)
            return
        self.queue.enqueue("event", {"category": "Performance", "action": metric, "value": round(value)})

    def track_device_info(self, platform: str, browser: str, **details: Any) -> None:
        self.queue.enqueue(
            "event",
            {
                "category": "Device",
                "action": "Info",
                "label": f"{platform} - {browser}",
                "deviceInfo": {"platform": platform, "browser": browser, **details},
            },
        )

    def engagement_score(self) -> int:
        score = min(20, (self.time_on_page_ms() // 30_000) * 5)
        score += max(self.scroll_milestones, default=0) // 5
        score += sum(1 for reached in self.funnel.values() if reached) * 5
        score += len(self.clicked_sections) * 3
        if self.funnel["puzzle_complete"]:
            score += 5
        if self.funnel["form_submit"]:
            score += 5
        return min(score, 100)

    def session_stats(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "duration_ms": self.time_on_page_ms(),
            "scroll_milestones": sorted(self.scroll_milestones),
            "sections_clicked": sorted(self.clicked_sections),
            "funnel": dict(self.funnel),
            "engagement_score": self.engagement_score(),
        }

    def end_session(self) -> bool:
        """Send the session summary beacons; later calls are no-ops."""
        if self._ended:
            return False
        self._ended = True

        duration = self.time_on_page_ms()
        self.queue.send_beacon(
            "event",
            {
                "category": "Session",
                "action": "End",
                "value": duration,
                "sessionData": {
                    "duration": duration,
                    "maxScroll": max(self.scroll_milestones, default=0),
                    "sectionsClicked": sorted(self.clicked_sections),
                    "funnel": dict(self.funnel),
                },
            },
        )
        self.queue.send_beacon("event", {"category": "Engagement", "action": "Score", "value": self.engagement_score()})
        logger.info("Session ended", extra={"event": "session_end"})
        return True
