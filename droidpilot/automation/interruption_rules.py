"""Rule table describing the interruptions the automaton recognises.

Each :class:`InterruptionRule` says how to spot one class of interruption in a
UI snapshot and which elements to interact with to get rid of it. Rules are
plain data: new accept labels, icons or whole rules can be added without
touching the automaton.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from ..device.models import ElementRole, UiElement, UiState


class InterruptionKind(str, Enum):
    PICKER = "picker"
    BOTTOM_SHEET = "bottom_sheet"
    PERMISSION = "permission"
    PERMISSION_ICON = "permission_icon"
    SYSTEM_DIALOG = "system_dialog"
    PLATFORM_VIEW = "platform_view"
    NOT_RESPONDING = "not_responding"


class Fallback(str, Enum):
    """Last-resort targets tried after the rule's labelled actions."""

    FIRST_BUTTON = "first_button"
    LAST_BUTTON = "last_button"
    BARRIER = "barrier"
    BACK = "back"


PICKER_TEXTS = (
    "Choose a phone number",
    "Choose an account",
    "Select a phone number",
)

POSITIVE_LABELS = ("Allow", "OK", "Accept", "Continue", "Grant", "Yes", "Enable")

ACCEPT_LABELS = (
    # Primary actions
    "Allow",
    "Accept",
    "Grant",
    "Continue",
    "Enable",
    "Turn on",
    "Yes",
    "OK",
    # Location
    "Allow once",
    "Allow only while using the app",
    "Allow all the time",
    "While using the app",
    "Only this time",
    "Precise location",
    "Allow location access",
    # Camera and media
    "Allow camera",
    "Allow photos",
    "Allow access to photos",
    "Select photos",
    # Notifications
    "Enable notifications",
    "Turn on notifications",
    "Allow notifications",
    # Storage
    "Allow files access",
    "Allow storage",
    "Manage all files",
    # Other
    "Allow contacts",
    "Allow microphone",
    "Allow bluetooth",
    "Always allow",
)

SYSTEM_DIALOG_TEXTS = (
    "Wait",
    "Close app",
    "OK",
    "Close",
    "Cancel",
    "Dismiss",
    "Later",
    "Not now",
    "Skip",
    "Got it",
    "Maybe later",
    "No thanks",
    "Update available",
    "Don't optimize",
    "Don't allow",
    "Deny",
)

NEGATIVE_LABELS = ("Deny", "Don't allow", "Don't allow access")

NOT_RESPONDING_TEXTS = ("isn't responding", "is not responding", "not responding")

DISMISS_LABELS = (
    "OK",
    "Close",
    "Cancel",
    "Dismiss",
    "Later",
    "Not now",
    "Skip",
    "Got it",
    "Allow",
    "Accept",
    "Maybe later",
    "No thanks",
)

PERMISSION_ICONS: Dict[str, tuple[str, ...]] = {
    "location": ("location_on", "location_pin", "my_location"),
    "camera": ("camera", "camera_alt", "photo_camera"),
    "notifications": ("notifications", "notification_important"),
    "microphone": ("mic",),
    "storage": ("storage", "folder"),
    "bluetooth": ("bluetooth",),
}

# Substrings of a permission id mapped onto the icon categories above
_CAPABILITY_KEYWORDS = (
    ("LOCATION", "location"),
    ("CAMERA", "camera"),
    ("NOTIFICATION", "notifications"),
    ("RECORD_AUDIO", "microphone"),
    ("MIC", "microphone"),
    ("STORAGE", "storage"),
    ("MEDIA", "storage"),
    ("BLUETOOTH", "bluetooth"),
    ("CONTACTS", "contacts"),
)

DIALOG_ROLES = (ElementRole.DIALOG.value, ElementRole.BOTTOM_SHEET.value)


def capability_category(capability_id: str) -> str:
    """Map ``android.permission.CAMERA`` or ``camera`` to an icon category."""
    upper = capability_id.upper()
    for keyword, category in _CAPABILITY_KEYWORDS:
        if keyword in upper:
            return category
    return capability_id.lower()


@dataclass(frozen=True)
class InterruptionRule:
    """One row of the interruption table.

    Detection: an element whose label matches one of ``triggers`` (or whose
    icon is one of ``icons``), preferring matches inside an element whose role
    is in ``container_roles``. A rule without triggers or icons fires on the
    container itself.

    Dismissal targets, in order: the matched element when ``act_on_trigger``,
    elements labelled ``action_labels``, elements showing ``action_icons``,
    then ``fallbacks``.

    A match labelled one of ``avoid_labels`` is ignored while its container
    also shows one of ``avoid_beside``.
    """

    pattern_id: str
    kind: InterruptionKind
    priority: int
    triggers: tuple[str, ...] = ()
    contains: bool = False
    icons: tuple[str, ...] = ()
    container_roles: tuple[str, ...] = DIALOG_ROLES
    act_on_trigger: bool = False
    action_labels: tuple[str, ...] = ()
    action_icons: tuple[str, ...] = ()
    fallbacks: tuple[Fallback, ...] = ()
    screen_fallback: bool = True
    every_n_ticks: int = 1
    avoid_labels: tuple[str, ...] = ()
    avoid_beside: tuple[str, ...] = ()

    def label_matches(self, label: str, trigger: str) -> bool:
        if not label:
            return False
        if self.contains:
            return trigger.lower() in label.lower()
        return label.strip().lower() == trigger.lower()

    def due(self, tick: int) -> bool:
        return tick % self.every_n_ticks == 0


@dataclass(frozen=True)
class Detection:
    """A visible instance of a rule's interruption in one snapshot."""

    rule: InterruptionRule
    trigger: UiElement
    container: Optional[UiElement]
    content_key: str


DEFAULT_RULES: tuple[InterruptionRule, ...] = (
    InterruptionRule(
        pattern_id="phone-picker",
        kind=InterruptionKind.PICKER,
        priority=70,
        triggers=PICKER_TEXTS,
        contains=True,
        container_roles=(ElementRole.PICKER.value, ElementRole.BOTTOM_SHEET.value, ElementRole.DIALOG.value),
        action_icons=("close",),
        fallbacks=(Fallback.BARRIER, Fallback.BACK),
    ),
    InterruptionRule(
        pattern_id="bottom-sheet",
        kind=InterruptionKind.BOTTOM_SHEET,
        priority=60,
        container_roles=(ElementRole.BOTTOM_SHEET.value,),
        action_labels=POSITIVE_LABELS,
        fallbacks=(Fallback.FIRST_BUTTON,),
        screen_fallback=False,
    ),
    InterruptionRule(
        pattern_id="permission-dialog",
        kind=InterruptionKind.PERMISSION,
        priority=50,
        triggers=ACCEPT_LABELS,
        act_on_trigger=True,
        fallbacks=(Fallback.LAST_BUTTON,),
    ),
    InterruptionRule(
        pattern_id="permission-icon",
        kind=InterruptionKind.PERMISSION_ICON,
        priority=40,
        icons=tuple(icon for icons in PERMISSION_ICONS.values() for icon in icons),
        act_on_trigger=True,
    ),
    InterruptionRule(
        pattern_id="system-dialog",
        kind=InterruptionKind.SYSTEM_DIALOG,
        priority=30,
        triggers=SYSTEM_DIALOG_TEXTS,
        act_on_trigger=True,
        screen_fallback=False,
        avoid_labels=NEGATIVE_LABELS,
        avoid_beside=ACCEPT_LABELS,
    ),
    InterruptionRule(
        pattern_id="platform-view",
        kind=InterruptionKind.PLATFORM_VIEW,
        priority=20,
        container_roles=(ElementRole.PLATFORM_VIEW.value,),
        fallbacks=(Fallback.FIRST_BUTTON,),
        screen_fallback=False,
        every_n_ticks=3,
    ),
    InterruptionRule(
        pattern_id="not-responding",
        kind=InterruptionKind.NOT_RESPONDING,
        priority=10,
        triggers=NOT_RESPONDING_TEXTS,
        contains=True,
        action_labels=("Wait", "OK"),
        every_n_ticks=4,
    ),
)


def build_rules(
    extra_accept_labels: Iterable[str] = (),
    rules: Sequence[InterruptionRule] = DEFAULT_RULES,
) -> List[InterruptionRule]:
    """Rules sorted highest priority first, with extra permission accept labels appended."""
    extra = tuple(label for label in extra_accept_labels if label)
    built = []
    for rule in rules:
        if extra and rule.kind == InterruptionKind.PERMISSION:
            known = {t.lower() for t in rule.triggers}
            rule = replace(rule, triggers=rule.triggers + tuple(label for label in extra if label.lower() not in known))
        elif extra and rule.avoid_beside:
            rule = replace(rule, avoid_beside=rule.avoid_beside + extra)
        built.append(rule)
    return sorted(built, key=lambda r: r.priority, reverse=True)


def detect(
    rule: InterruptionRule,
    state: UiState,
    pending: FrozenSet[str] = frozenset(),
) -> List[Detection]:
    """Every visible instance of ``rule`` in ``state``, most preferred first.

    Matches inside a container are preferred; whole-screen matches are used
    only when none are scoped and the rule allows it. The permission icon rule
    only looks for icons of ``pending`` permission categories.
    """
    by_id = {element.element_id: element for element in state.elements}
    container_ids = {e.element_id for e in state.elements if e.role in rule.container_roles}

    def container_of(element: UiElement) -> Optional[UiElement]:
        if element.element_id in container_ids:
            return element
        for ancestor in element.ancestors:
            if ancestor in container_ids:
                return by_id.get(ancestor)
        return None

    if rule.triggers:
        matches = [
            element
            for trigger in rule.triggers
            for element in state.elements
            if rule.label_matches(element.label, trigger)
        ]
    elif rule.icons:
        wanted = set(rule.icons)
        if rule.kind == InterruptionKind.PERMISSION_ICON:
            wanted = {icon for category in pending for icon in PERMISSION_ICONS.get(category, ())} & wanted
        matches = [element for element in state.elements if element.icon in wanted]
    else:
        matches = [by_id[element_id] for element_id in by_id if element_id in container_ids]

    if rule.avoid_labels:
        matches = [m for m in matches if not _avoided(rule, m, container_of(m), state)]

    scoped = [m for m in matches if container_of(m) is not None]
    chosen = scoped or (matches if rule.screen_fallback else [])

    detections: List[Detection] = []
    seen = set()
    for element in chosen:
        if element.element_id in seen:
            continue
        seen.add(element.element_id)
        container = container_of(element)
        detections.append(
            Detection(
                rule=rule,
                trigger=element,
                container=container,
                content_key=content_key(element, container, state),
            )
        )
    return detections


def _avoided(rule: InterruptionRule, element: UiElement, container: Optional[UiElement], state: UiState) -> bool:
    """Whether ``element`` is a label to avoid next to an accept action in the same container."""
    if container is None or not any(rule.label_matches(element.label, label) for label in rule.avoid_labels):
        return False
    return any(
        e.label.strip().lower() == label.lower()
        for e in state.elements
        if container.element_id in e.ancestors
        for label in rule.avoid_beside
    )


def content_key(element: UiElement, container: Optional[UiElement], state: UiState) -> str:
    """Text identifying an interruption instance independent of element ids.

    A match inside a container is qualified by the container's title and its
    first labels, so two dialogs offering the same button stay distinct.
    """
    context = ""
    if container is not None:
        inner = [
            e.label.strip().lower()
            for e in state.elements
            if container.element_id in e.ancestors and e.label
        ]
        title = container.label.strip().lower()
        context = ",".join(([title] if title else []) + inner[:3])

    if element is container or not (element.label or element.icon):
        text = context
    else:
        text = (element.label or element.icon or "").strip().lower()
        if context:
            text = f"{text}@{context}"
    where = container.role if container is not None else "screen"
    return f"{text}|{where}"


def icon_category(icon: Optional[str]) -> Optional[str]:
    for category, icons in PERMISSION_ICONS.items():
        if icon in icons:
            return category
    return None
