# dialog.py
"""
Lost & found conversation state machine.

- Menu: 1 lost, 2 found, 3 search, 4 my reports, 5 update status; "menu" and
  "cancel"/"0" work from any state.
- Found items: image -> ITEM, LOCATION, CONTACT_PHONE[, DESCRIPTION]
- Lost items: ITEM, LOCATION, DESCRIPTION, then matching against found reports.
- Marking a report claimed/recovered needs the report's verification code
  (my reports -> pick number -> code, or "mark <report id>").
- Legacy update flow (5) marks by item name / report id with a YES confirmation
  and records a success story.

DialogEngine.handle never writes sessions; it returns a Turn and the
Conversation applies it through the SessionManager.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from db_io import (
    AWAITING_DETAILS,
    AWAITING_IMAGE,
    ConfirmStatusUpdateSession,
    Report,
    ReportFoundSession,
    ReportLostSession,
    ReportStore,
    SearchSession,
    SelectReportSession,
    Session,
    SessionManager,
    UpdateStatusSession,
    VerifyCodeSession,
)
from media import MediaError, MediaIngestor
from reports import (
    CODE_LENGTH,
    MATCH_MODES,
    MATCH_WEIGHTED,
    SEARCH_EXACT,
    SEARCH_MODES,
    ReportDraft,
    ReportFormatError,
    find_matches,
    generate_code,
    normalize_code,
    normalize_text,
    parse_report,
    search_reports,
    verify_code,
)
from whatsapp_messaging import MediaAttachment

logger = logging.getLogger("lostfound.dialog")

BOT_NAME = "Kwasu Lost And Found Bot"
SEARCH_SCOPES = ("found", "all")
DEFAULT_MAX_MATCHES = 5

MESSAGES: Dict[str, str] = {
    "menu": (
        f"📋 *{BOT_NAME}* Menu:\n"
        "1. Report Lost Item\n"
        "2. Report Found Item\n"
        "3. Search Items\n"
        "4. My Reports\n"
        "5. Update Report Status\n"
        "Reply with a number, or \"cancel\" to stop."
    ),
    "invalid_command": "❓ Invalid command. Reply \"menu\" for options.",
    "cancelled": "🚫 Cancelled. Reply \"menu\" to start again.",
    "ask_lost": (
        f"🔍 *{BOT_NAME}*\n"
        "Reply with: ITEM, LOCATION, DESCRIPTION\n"
        "e.g. \"Water Bottle, Library, Blue with sticker\""
    ),
    "ask_image": (
        f"🎁 *{BOT_NAME}*\n"
        "Please send a clear photo of the item you found."
    ),
    "image_required": "📷 A photo is required. Please send an image of the item, or reply \"cancel\".",
    "image_received": "✅ Photo received!",
    "ask_found_details": (
        "Now reply with: ITEM, LOCATION, CONTACT_PHONE, DESCRIPTION (optional)\n"
        "e.g. \"Keys, Cafeteria, 08012345678, Red keyholder\""
    ),
    "ask_found_details_no_image": (
        f"🎁 *{BOT_NAME}*\n"
        "Reply with: ITEM, LOCATION, CONTACT_PHONE\n"
        "e.g. \"Keys, Cafeteria, 08012345678\""
    ),
    "image_timeout": "⏳ Downloading your photo took too long. Please send it again.",
    "image_not_found": "⚠️ We couldn't open that photo link. Please send the photo again.",
    "image_empty": "⚠️ The photo we received was empty. Please send it again.",
    "image_not_image": "⚠️ That attachment is not an image. Please send a photo (JPG or PNG).",
    "image_error": "⚠️ We couldn't process your photo. Please try sending it again.",
    "image_too_large": "📷 That photo is too large. Please send a smaller or compressed photo.",
    "format_error": "⚠️ Format error. Use: {template}",
    "lost_saved": (
        f"✅ *{BOT_NAME}*\n"
        "Lost item reported: {item}\n"
        "🔑 Your verification code: *{code}*\n"
        "Keep it private. You'll need it to mark the item as recovered."
    ),
    "found_saved": (
        f"✅ *{BOT_NAME}*\n"
        "Found item reported: {item}\n"
        "🔑 Your verification code: *{code}*\n"
        "Keep it private. You'll need it to mark the item as claimed."
    ),
    "safety_notice": (
        "🛡️ Safety: meet in a public place on campus, ask the owner to describe the item "
        "before handing it over, and never share your verification code."
    ),
    "matches_header": "🔎 Possible matches among found items:",
    "no_matches": "No matching found items yet. We'll keep your report on file.",
    "ask_search": (
        f"🔎 *{BOT_NAME}*\n"
        "Reply with a keyword (e.g. \"water\", \"keys\")"
    ),
    "search_header": f"🔍 *{BOT_NAME}*\nItems matching \"{{query}}\":",
    "no_results": "❌ No items found.",
    "no_reports": "You haven't reported any items yet. Reply \"menu\" for options.",
    "my_reports_header": "📄 Your reports:",
    "select_prompt": "Reply with the number of a report to mark it as resolved, or \"cancel\".",
    "all_resolved": "All your reports are already resolved. 🎉",
    "select_range": "Please reply with a number between 1 and {count}, or \"cancel\".",
    "report_missing": "⚠️ That report no longer exists.",
    "not_owner": "⛔ You can only update reports you created.",
    "already_marked": "ℹ️ This report is already marked as {status}.",
    "ask_code": "🔑 Enter the 6-character verification code for \"{item}\" to mark it as {status}.",
    "code_length": "⚠️ Verification codes have 6 characters. Please try again, or reply \"cancel\".",
    "code_mismatch": "❌ Incorrect verification code. Please try again, or reply \"cancel\".",
    "marked": "✅ \"{item}\" has been marked as {status}. Thank you!",
    "mark_usage": "Usage: mark <report id>",
    "ask_update": "✏️ Reply with the item name or report ID you want to mark as resolved.",
    "no_update_match": "❌ No open report of yours matches that. Reply \"menu\" for options.",
    "multiple_update_match": "Several open reports match. Reply with the report ID:\n{reports}",
    "confirm_update": "Mark \"{item}\" ({location}) as {status}? Reply YES or NO.",
    "confirm_yes_no": "Please reply YES or NO.",
    "story_recorded": "🎉 \"{item}\" marked as {status}. Your story has been added to our success stories!",
}

YES_WORDS = {"yes", "y", "ok", "confirm"}
NO_WORDS = {"no", "n"}

# ---------------------------------------------------------------------------
# Inbound message and command grammar
# ---------------------------------------------------------------------------


@dataclass
class InboundMessage:
    sender: str
    body: str = ""
    media: List[MediaAttachment] = field(default_factory=list)


MENU = "menu"
CANCEL = "cancel"
REPORT_LOST = "report_lost"
REPORT_FOUND = "report_found"
SEARCH = "search"
MY_REPORTS = "my_reports"
UPDATE_STATUS = "update_status"
MARK = "mark"
TEXT = "text"

MENU_CHOICES = {
    "1": REPORT_LOST,
    "2": REPORT_FOUND,
    "3": SEARCH,
    "4": MY_REPORTS,
    "5": UPDATE_STATUS,
}


@dataclass(frozen=True)
class Command:
    kind: str
    text: str = ""
    arg: str = ""


def parse_command(body: Optional[str]) -> Command:
    raw = (body or "").strip()
    folded = raw.casefold()
    if folded == "menu":
        return Command(MENU, raw)
    if folded in {"cancel", "0"}:
        return Command(CANCEL, raw)
    if folded in MENU_CHOICES:
        return Command(MENU_CHOICES[folded], raw)
    if folded == "mark" or folded.startswith("mark "):
        return Command(MARK, raw, raw[4:].strip())
    return Command(TEXT, raw)


@dataclass
class Turn:
    replies: List[str]
    next_state: Optional[Session] = None
    unchanged: bool = False

    @classmethod
    def stay(cls, *replies: str) -> "Turn":
        return cls(list(replies), unchanged=True)

    @classmethod
    def advance(cls, state: Session, *replies: str) -> "Turn":
        return cls(list(replies), next_state=state)

    @classmethod
    def end(cls, *replies: str) -> "Turn":
        return cls(list(replies))


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_timestamp(report: Report) -> str:
    created = report.created_at()
    return created.strftime("%d %b %Y, %H:%M UTC") if created else report.timestamp


def format_report(report: Report, score: Optional[int] = None) -> str:
    lines = [f"📦 {report.item}", f"📍 {report.location}"]
    if report.description:
        lines.append(f"📝 {report.description}")
    if report.type == "found" and report.contact_phone:
        lines.append(f"📞 {report.contact_phone}")
    if report.has_image:
        lines.append("📷 Photo on file")
    lines.append(f"⏰ {format_timestamp(report)}")
    if report.is_resolved:
        lines.append(f"✔️ {report.status_type.capitalize()}")
    if score is not None:
        lines.append(f"⭐ Match score: {score}")
    return "\n".join(lines)


def format_owned_report(index: int, report: Report) -> str:
    status = report.status_type if report.is_resolved else "open"
    return f"{index}. [{report.type.upper()}] {report.item} @ {report.location} ({status})\n   ID: {report.id}"


def _phone_digits(value: Optional[str]) -> str:
    return "".join(ch for ch in (value or "").replace("whatsapp:", "") if ch.isdigit())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class DialogEngine:
    def __init__(
        self,
        reports: ReportStore,
        media: MediaIngestor,
        match_mode: str = MATCH_WEIGHTED,
        search_mode: str = SEARCH_EXACT,
        search_scope: str = "found",
        image_intake: bool = True,
        max_matches: int = DEFAULT_MAX_MATCHES,
        clock: Callable[[], datetime] = utc_now,
        code_factory: Callable[[], str] = generate_code,
    ):
        if match_mode not in MATCH_MODES:
            raise ValueError(f"Unknown match mode: {match_mode}")
        if search_mode not in SEARCH_MODES:
            raise ValueError(f"Unknown search mode: {search_mode}")
        if search_scope not in SEARCH_SCOPES:
            raise ValueError(f"Unknown search scope: {search_scope}")
        self.reports = reports
        self.media = media
        self.match_mode = match_mode
        self.search_mode = search_mode
        self.search_scope = search_scope
        self.image_intake = image_intake
        self.max_matches = max_matches
        self.clock = clock
        self.code_factory = code_factory
        self._handlers = {
            ReportLostSession.action: self._on_report_lost,
            ReportFoundSession.action: self._on_report_found,
            SearchSession.action: self._on_search,
            SelectReportSession.action: self._on_select_report,
            VerifyCodeSession.action: self._on_verify_code,
            UpdateStatusSession.action: self._on_update_status,
            ConfirmStatusUpdateSession.action: self._on_confirm_status_update,
        }

    def handle(self, state: Optional[Session], message: InboundMessage) -> Turn:
        command = parse_command(message.body)
        if command.kind == MENU:
            return Turn.end(MESSAGES["menu"])
        if command.kind == CANCEL:
            return Turn.end(MESSAGES["cancelled"])
        if state is None:
            return self._on_menu_choice(command, message)
        return self._handlers[state.action](state, command, message)

    # --- top level ---------------------------------------------------------

    def _on_menu_choice(self, command: Command, message: InboundMessage) -> Turn:
        if command.kind == REPORT_LOST:
            return Turn.advance(ReportLostSession(), MESSAGES["ask_lost"])
        if command.kind == REPORT_FOUND:
            if self.image_intake:
                return Turn.advance(ReportFoundSession(step=AWAITING_IMAGE), MESSAGES["ask_image"])
            return Turn.advance(ReportFoundSession(step=AWAITING_DETAILS), MESSAGES["ask_found_details_no_image"])
        if command.kind == SEARCH:
            return Turn.advance(SearchSession(), MESSAGES["ask_search"])
        if command.kind == MY_REPORTS:
            return self._show_my_reports(message.sender)
        if command.kind == UPDATE_STATUS:
            return Turn.advance(UpdateStatusSession(), MESSAGES["ask_update"])
        if command.kind == MARK:
            if not command.arg:
                return Turn.end(MESSAGES["mark_usage"])
            return self._begin_verification(command.arg, message.sender)
        return Turn.end(MESSAGES["invalid_command"])

    # --- report intake -----------------------------------------------------

    def _save_report(self, draft: ReportDraft, sender: str) -> Report:
        report = draft.to_report(
            reporter=sender,
            timestamp=self.clock().isoformat(),
            verification_code=self.code_factory(),
        )
        return self.reports.create(report)

    def _on_report_found(self, state: ReportFoundSession, command: Command, message: InboundMessage) -> Turn:
        if state.step == AWAITING_IMAGE:
            if not message.media:
                return Turn.stay(MESSAGES["image_required"])
            try:
                image_url = self.media.ingest(message.media)
            except MediaError as exc:
                logger.info("Image intake failed for %s: %s (%s)", message.sender, type(exc).__name__, exc)
                return Turn.stay(MESSAGES[exc.message_key])
            next_state = ReportFoundSession(step=AWAITING_DETAILS, image_url=image_url)
            return Turn.advance(next_state, MESSAGES["image_received"], MESSAGES["ask_found_details"])

        if not command.text:
            return Turn.stay(MESSAGES["ask_found_details"])
        try:
            draft = parse_report(command.text, "found", image_url=state.image_url)
        except ReportFormatError as exc:
            return Turn.stay(MESSAGES["format_error"].format(template=exc.template))
        report = self._save_report(draft, message.sender)
        return Turn.end(
            MESSAGES["found_saved"].format(item=report.item, code=report.verification_code),
            MESSAGES["safety_notice"],
        )

    def _on_report_lost(self, state: ReportLostSession, command: Command, message: InboundMessage) -> Turn:
        if not command.text:
            return Turn.stay(MESSAGES["ask_lost"])
        try:
            draft = parse_report(command.text, "lost")
        except ReportFormatError as exc:
            return Turn.stay(MESSAGES["format_error"].format(template=exc.template))
        # nothing is saved until matching has succeeded
        matches = find_matches(draft.item, self.reports.by_type("found"), self.match_mode, self.clock())
        report = self._save_report(draft, message.sender)
        confirmation = MESSAGES["lost_saved"].format(item=report.item, code=report.verification_code)
        if not matches:
            return Turn.end(confirmation, MESSAGES["no_matches"])
        logger.info("Lost report id=%s has %d candidate matches", report.id, len(matches))
        show_score = self.match_mode == MATCH_WEIGHTED
        blocks = [format_report(m.report, m.score if show_score else None) for m in matches[: self.max_matches]]
        return Turn.end(confirmation, MESSAGES["matches_header"] + "\n\n" + "\n\n".join(blocks))

    # --- search ------------------------------------------------------------

    def _on_search(self, state: SearchSession, command: Command, message: InboundMessage) -> Turn:
        if not command.text:
            return Turn.stay(MESSAGES["ask_search"])
        pool = self.reports.by_type("found") if self.search_scope == "found" else self.reports.all()
        hits = search_reports(command.text, pool, self.search_mode)
        if not hits:
            return Turn.end(MESSAGES["no_results"])
        header = MESSAGES["search_header"].format(query=command.text)
        return Turn.end(header + "\n\n" + "\n\n".join(format_report(r) for r in hits))

    # --- my reports / verification ------------------------------------------

    def _show_my_reports(self, sender: str) -> Turn:
        owned = self.reports.by_reporter(sender)
        if not owned:
            return Turn.end(MESSAGES["no_reports"])
        listing = MESSAGES["my_reports_header"] + "\n" + "\n".join(
            format_owned_report(idx, r) for idx, r in enumerate(owned, start=1)
        )
        if all(r.is_resolved for r in owned):
            return Turn.end(listing, MESSAGES["all_resolved"])
        return Turn.advance(SelectReportSession(report_ids=[r.id for r in owned]), listing, MESSAGES["select_prompt"])

    def _on_select_report(self, state: SelectReportSession, command: Command, message: InboundMessage) -> Turn:
        count = len(state.report_ids)
        try:
            index = int(command.text)
        except ValueError:
            return Turn.stay(MESSAGES["select_range"].format(count=count))
        if not 1 <= index <= count:
            return Turn.stay(MESSAGES["select_range"].format(count=count))
        return self._begin_verification(state.report_ids[index - 1], message.sender)

    def _check_target(self, report: Optional[Report], sender: str) -> Optional[Turn]:
        if report is None:
            return Turn.end(MESSAGES["report_missing"])
        if report.reporter != sender:
            logger.warning("Sender %s tried to update report id=%s owned by someone else", sender, report.id)
            return Turn.end(MESSAGES["not_owner"])
        if report.is_resolved:
            return Turn.end(MESSAGES["already_marked"].format(status=report.status_type))
        return None

    def _begin_verification(self, report_id: str, sender: str) -> Turn:
        report = self.reports.get(report_id)
        rejection = self._check_target(report, sender)
        if rejection:
            return rejection
        return Turn.advance(
            VerifyCodeSession(report_id=report.id, status_type=report.status_type),
            MESSAGES["ask_code"].format(item=report.item, status=report.status_type),
        )

    def _on_verify_code(self, state: VerifyCodeSession, command: Command, message: InboundMessage) -> Turn:
        code = normalize_code(command.text)
        if len(code) != CODE_LENGTH:
            return Turn.stay(MESSAGES["code_length"])
        report = self.reports.get(state.report_id)
        rejection = self._check_target(report, message.sender)
        if rejection:
            return rejection
        if not verify_code(report, code):
            logger.info("Verification code mismatch for report id=%s", report.id)
            return Turn.stay(MESSAGES["code_mismatch"])
        self.reports.mark_resolved(report, self.clock().isoformat())
        return Turn.end(MESSAGES["marked"].format(item=report.item, status=report.status_type))

    # --- legacy status update ----------------------------------------------

    def _can_update(self, report: Report, sender: str) -> bool:
        if report.reporter == sender:
            return True
        contact = _phone_digits(report.contact_phone)
        return bool(contact) and contact == _phone_digits(sender)

    def _on_update_status(self, state: UpdateStatusSession, command: Command, message: InboundMessage) -> Turn:
        if not command.text:
            return Turn.stay(MESSAGES["ask_update"])
        wanted = normalize_text(command.text)
        candidates = [
            r for r in self.reports.all()
            if not r.is_resolved
            and self._can_update(r, message.sender)
            and (r.id == command.text or normalize_text(r.item) == wanted)
        ]
        if not candidates:
            return Turn.end(MESSAGES["no_update_match"])
        if len(candidates) > 1:
            listing = "\n".join(format_owned_report(idx, r) for idx, r in enumerate(candidates, start=1))
            return Turn.stay(MESSAGES["multiple_update_match"].format(reports=listing))
        report = candidates[0]
        return Turn.advance(
            ConfirmStatusUpdateSession(report_id=report.id, status_type=report.status_type),
            MESSAGES["confirm_update"].format(item=report.item, location=report.location, status=report.status_type),
        )

    def _on_confirm_status_update(self, state: ConfirmStatusUpdateSession, command: Command, message: InboundMessage) -> Turn:
        answer = command.text.casefold()
        if answer in NO_WORDS:
            return Turn.end(MESSAGES["cancelled"])
        if answer not in YES_WORDS:
            return Turn.stay(MESSAGES["confirm_yes_no"])
        report = self.reports.get(state.report_id)
        if report is None:
            return Turn.end(MESSAGES["report_missing"])
        if report.is_resolved:
            return Turn.end(MESSAGES["already_marked"].format(status=report.status_type))
        resolved_at = self.clock().isoformat()
        self.reports.mark_resolved(report, resolved_at)
        self.reports.add_success_story(report, resolved_at)
        return Turn.end(MESSAGES["story_recorded"].format(item=report.item, status=report.status_type))


# ---------------------------------------------------------------------------
# Conversation: load session -> run turn -> persist outcome
# ---------------------------------------------------------------------------


class Conversation:
    def __init__(self, sessions: SessionManager, engine: DialogEngine):
        self.sessions = sessions
        self.engine = engine

    def respond(self, message: InboundMessage) -> List[str]:
        state = self.sessions.load(message.sender)
        turn = self.engine.handle(state, message)
        if turn.unchanged:
            return turn.replies
        if turn.next_state is not None:
            self.sessions.save(message.sender, turn.next_state)
        elif state is not None:
            self.sessions.clear(message.sender)
        return turn.replies
