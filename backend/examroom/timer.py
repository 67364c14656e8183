from __future__ import annotations
import math
import re
from datetime import datetime
from typing import Optional, Tuple


_MINUTES_RE = re.compile(r"(\d+)\s*phút")


def parse_minutes_from_prompt(prompt: Optional[str]) -> int:
	if not prompt:
		return 0
	match = _MINUTES_RE.search(prompt)
	if match:
		return int(match.group(1))
	return 0


def format_time(seconds: int) -> str:
	seconds = max(0, int(seconds))
	return f"{seconds // 60:02d}:{seconds % 60:02d}"


def timer_stage(time_left: int, total_time: int) -> str:
	"""Bucket the remaining time for display.

	The last ten seconds are always ``critical``; otherwise the stage follows
	the fraction of the total still left.
	"""
	if not total_time:
		return "idle"
	if time_left <= 10:
		return "critical"
	percent = time_left / total_time
	if percent > 0.75:
		return "calm"
	if percent > 0.5:
		return "good"
	if percent > 0.25:
		return "warning"
	return "urgent"


def seconds_left(expires_at: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
	if expires_at is None:
		return None
	now = now or datetime.utcnow()
	return max(0, math.floor((expires_at - now).total_seconds()))


def is_deadline_passed(deadline: Optional[datetime], now: Optional[datetime] = None) -> bool:
	if deadline is None:
		return False
	now = now or datetime.utcnow()
	return now > deadline


def late_penalty(score: float, deadline: Optional[datetime], submitted_at: datetime) -> Tuple[float, str]:
	"""Return (points to deduct, note) for a submission made after the deadline.

	Nothing is deducted from a zero score or within the first minute.
	"""
	if deadline is None or score <= 0 or submitted_at <= deadline:
		return 0.0, ""
	minutes_late = math.floor((submitted_at - deadline).total_seconds() / 60)
	if minutes_late <= 0:
		return 0.0, ""
	if minutes_late <= 30:
		return 0.5, f"Nộp muộn {minutes_late} phút, trừ 0.5 điểm."
	if minutes_late <= 60:
		return 2.0, f"Nộp muộn {minutes_late} phút, trừ 2 điểm."
	hours, mins = divmod(minutes_late, 60)
	return score / 2, f"Nộp muộn {hours} giờ {mins} phút, trừ 1/2 số điểm."
