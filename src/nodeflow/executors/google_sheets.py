"""
Google Sheets action.

Writes context data to a spreadsheet through the Sheets REST API: either a
new spreadsheet (``operation: create``) or below the existing rows of
``Sheet1`` in a given one (``operation: append``). The credential secret is
the OAuth token JSON ``{access_token, refresh_token, expiry_date}`` with
``expiry_date`` in epoch milliseconds.
"""
import json
import re
import time
from datetime import datetime, timezone
from typing import Any, Mapping

import requests

from nodeflow.context import ExecutionContext, with_variable
from nodeflow.errors import ConfigurationError, NodeExecutionError, TransientError
from nodeflow.executors.base import NodeExecutor
from nodeflow.observability import get_logger, with_trace_context
from nodeflow.runtime.contracts import ExecutorInput
from nodeflow.runtime.retry import is_transient_status
from nodeflow.storage.credentials import CredentialStore

logger = get_logger(__name__)

SHEET_TITLE = "Sheet1"
SPREADSHEET_URL = "https://docs.google.com/spreadsheets/d/{}"

CATEGORY_FORMAT = {
    "textFormat": {"bold": True, "foregroundColor": {"red": 1, "green": 1, "blue": 1}},
    "backgroundColor": {"red": 0.2, "green": 0.6, "blue": 0.86},
}
HEADER_FORMAT = {
    "textFormat": {"bold": True},
    "backgroundColor": {"red": 0.9, "green": 0.9, "blue": 0.9},
}


def _title_case(key: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in key.split("_"))


def _cell(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return "" if value is None else value


def _strip_trailing_blank(rows: list[list[Any]]) -> list[list[Any]]:
    if rows and rows[-1] == [""]:
        rows.pop()
    return rows


def objects_to_sheet_data(objects: list[Mapping[str, Any]]) -> list[list[Any]]:
    """
    Lay out a list of records as sheet rows.

    Records carrying an ``items`` or ``details`` list become one section
    per record; records with a ``category`` field are grouped into one
    section per category. Anything else is a header row followed by one
    row per record. Sections are an upper-cased title row, a header row
    and the data rows, separated by a blank row.
    """
    if not objects:
        return []

    if any(isinstance(o.get("items"), list) or isinstance(o.get("details"), list) for o in objects):
        rows: list[list[Any]] = []
        for group in objects:
            name = str(group.get("category") or group.get("name") or "Data")
            items = group.get("items") or group.get("details") or []
            if not isinstance(items, list) or not items:
                continue
            headers = list(items[0].keys())
            rows.append([name.upper()])
            rows.append([h[:1].upper() + h[1:].replace("_", " ") for h in headers])
            rows.extend([_cell(item.get(h)) for h in headers] for item in items)
            rows.append([""])
        return _strip_trailing_blank(rows)

    if "category" in objects[0]:
        groups: dict[str, list[Mapping[str, Any]]] = {}
        for obj in objects:
            groups.setdefault(str(obj.get("category") or "Other"), []).append(obj)
        rows = []
        for name, members in groups.items():
            keys: list[str] = []
            for member in members:
                keys.extend(k for k in member if k != "category" and k not in keys)
            rows.append([name.upper()])
            rows.append([_title_case(k) for k in keys])
            rows.extend([_cell(member.get(k)) for k in keys] for member in members)
            rows.append([""])
        return _strip_trailing_blank(rows)

    keys = list(objects[0].keys())
    return [[_title_case(k) for k in keys]] + [[_cell(obj.get(k)) for k in keys] for obj in objects]


def to_sheet_data(raw: Any) -> list[list[Any]]:
    """Convert any context value into rows."""
    if isinstance(raw, list):
        if raw and isinstance(raw[0], dict):
            return objects_to_sheet_data(raw)
        if raw and isinstance(raw[0], list):
            return raw
        return [[str(item)] for item in raw]
    if isinstance(raw, dict):
        return [[key, _cell(value)] for key, value in raw.items()]
    return [[str(raw or "")]]


def format_requests(rows: list[list[Any]], sheet_id: int, start_row: int = 0) -> list[dict[str, Any]]:
    """Bold category titles and the header row that follows each of them."""
    if not rows:
        return []
    width = max(len(row) for row in rows)
    requests_: list[dict[str, Any]] = []
    for i, row in enumerate(rows):
        first = row[0] if row else ""
        is_category = len(row) == 1 and isinstance(first, str) and first != "" and first == first.upper()
        follows_title = i > 0 and len(rows[i - 1]) == 1 and rows[i - 1][0] != ""
        is_header = (i == 0 or follows_title) and len(row) > 1
        if not (is_category or is_header):
            continue
        requests_.append(
            {
                "repeatCell": {
                    "range": {
                        "sheetId": sheet_id,
                        "startRowIndex": start_row + i,
                        "endRowIndex": start_row + i + 1,
                        "startColumnIndex": 0,
                        "endColumnIndex": width,
                    },
                    "cell": {"userEnteredFormat": CATEGORY_FORMAT if is_category else HEADER_FORMAT},
                    "fields": "userEnteredFormat(textFormat,backgroundColor)",
                }
            }
        )
    return requests_


class GoogleSheetsClient:
    """Authorised calls to the Sheets API over a requests session."""

    def __init__(
        self,
        session: requests.Session,
        token: Mapping[str, Any],
        base_url: str = "https://sheets.googleapis.com/v4",
        token_url: str = "https://oauth2.googleapis.com/token",
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout_s: float = 30.0,
    ):
        self.session = session
        self.token = dict(token)
        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout_s = timeout_s

    def _is_expired(self) -> bool:
        expiry = self.token.get("expiry_date")
        return bool(expiry) and float(expiry) < time.time() * 1000

    def refresh(self) -> None:
        """Exchange the refresh token for a new access token."""
        if not self.token.get("refresh_token"):
            raise ConfigurationError("Google Sheets node: access token expired and no refresh token stored")
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("Google Sheets node: Google OAuth client is not configured")
        body = self._send(
            "POST",
            self.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.token["refresh_token"],
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        self.token["access_token"] = body["access_token"]
        self.token["expiry_date"] = time.time() * 1000 + float(body.get("expires_in", 3600)) * 1000
        logger.info("Google access token refreshed")

    def request(self, method: str, path: str, body: Any = None, params: dict | None = None) -> dict:
        if self._is_expired():
            self.refresh()
        headers = {"Authorization": f"Bearer {self.token.get('access_token', '')}"}
        return self._send(
            method, f"{self.base_url}{path}", json=body, params=params, headers=headers
        )

    def _send(self, method: str, url: str, **kwargs: Any) -> dict:
        kwargs = {k: v for k, v in kwargs.items() if v is not None}
        try:
            response = self.session.request(method, url, timeout=self.timeout_s, **kwargs)
        except requests.RequestException as e:
            raise TransientError(f"Google Sheets request failed: {e}") from e
        if response.status_code >= 400:
            message = f"Google Sheets node: {method} {url} returned {response.status_code}: {response.text[:200]}"
            if is_transient_status(response.status_code):
                raise TransientError(message)
            raise NodeExecutionError(message)
        try:
            return response.json()
        except ValueError:
            return {}

    def create(self, title: str, rows: list[list[Any]]) -> dict[str, Any]:
        created = self.request(
            "POST",
            "/spreadsheets",
            {"properties": {"title": title}, "sheets": [{"properties": {"title": SHEET_TITLE}}]},
        )
        spreadsheet_id = created.get("spreadsheetId")
        if not spreadsheet_id:
            raise NodeExecutionError("Google Sheets node: spreadsheet was not created")
        sheets = created.get("sheets") or [{}]
        sheet_id = (sheets[0].get("properties") or {}).get("sheetId", 0)

        if rows:
            self._write(spreadsheet_id, f"{SHEET_TITLE}!A1", rows)
            width = max(len(row) for row in rows)
            self._format(
                spreadsheet_id,
                format_requests(rows, sheet_id)
                + [
                    {
                        "autoResizeDimensions": {
                            "dimensions": {
                                "sheetId": sheet_id,
                                "dimension": "COLUMNS",
                                "startIndex": 0,
                                "endIndex": width,
                            }
                        }
                    }
                ],
            )
        return {"spreadsheetId": spreadsheet_id, "spreadsheetUrl": SPREADSHEET_URL.format(spreadsheet_id)}

    def append(self, spreadsheet_id: str, rows: list[list[Any]]) -> dict[str, Any]:
        current = self.request("GET", f"/spreadsheets/{spreadsheet_id}/values/{SHEET_TITLE}")
        # one blank row between the existing data and the new block
        last_row = len(current.get("values") or []) + 2

        meta = self.request("GET", f"/spreadsheets/{spreadsheet_id}", params={"fields": "sheets.properties"})
        sheets = meta.get("sheets") or [{}]
        sheet_id = (sheets[0].get("properties") or {}).get("sheetId", 0)

        updated = self._write(spreadsheet_id, f"{SHEET_TITLE}!A{last_row}", rows)
        self._format(spreadsheet_id, format_requests(rows, sheet_id, start_row=last_row - 1))
        return {
            "spreadsheetId": spreadsheet_id,
            "spreadsheetUrl": SPREADSHEET_URL.format(spreadsheet_id),
            "updatedRange": updated.get("updatedRange"),
            "updatedRows": len(rows),
        }

    def _write(self, spreadsheet_id: str, range_a1: str, rows: list[list[Any]]) -> dict:
        return self.request(
            "PUT",
            f"/spreadsheets/{spreadsheet_id}/values/{range_a1}",
            {"values": rows},
            params={"valueInputOption": "RAW"},
        )

    def _format(self, spreadsheet_id: str, requests_: list[dict[str, Any]]) -> None:
        if not requests_:
            return
        try:
            self.request("POST", f"/spreadsheets/{spreadsheet_id}:batchUpdate", {"requests": requests_})
        except (NodeExecutionError, TransientError) as e:
            logger.warning(
                "Spreadsheet formatting skipped",
                extra=with_trace_context(spreadsheet_id=spreadsheet_id, error=str(e)),
            )


_PATH = re.compile(r"^[\w-]+(\.[\w-]+)*$")


class GoogleSheetsExecutor(NodeExecutor):
    """Writes a context value to a new or existing spreadsheet."""

    label = "Google Sheets"

    def __init__(
        self,
        credentials: CredentialStore,
        session: requests.Session | None = None,
        base_url: str = "https://sheets.googleapis.com/v4",
        token_url: str = "https://oauth2.googleapis.com/token",
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout_s: float = 30.0,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.credentials = credentials
        self.session = session or requests.Session()
        self.client_options = {
            "base_url": base_url,
            "token_url": token_url,
            "client_id": client_id,
            "client_secret": client_secret,
            "timeout_s": timeout_s,
        }

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        data = params.data
        with self.reporting(params):
            self.require(data, "credentialId", "dataVariable")
            name = str(data.get("variableName") or "googleSheets")
            operation = str(data.get("operation") or "create")
            if operation not in ("create", "append"):
                raise ConfigurationError(f"Google Sheets node: unknown operation {operation!r}")

            rows = to_sheet_data(self.resolve_data(str(data["dataVariable"]), params.context))
            client = GoogleSheetsClient(self.session, self._token(params), **self.client_options)

            if operation == "append" and data.get("spreadsheetId"):
                spreadsheet_id = self.render(data["spreadsheetId"], params.context).strip()
                result = params.step_runner.run(
                    f"google-sheets-append:{params.node_id}",
                    lambda: client.append(spreadsheet_id, rows),
                )
            else:
                default_title = "Workflow Data - " + datetime.now(timezone.utc).isoformat()
                title = self.render(data.get("spreadsheetTitle") or default_title, params.context)
                result = params.step_runner.run(
                    f"google-sheets-create:{params.node_id}",
                    lambda: client.create(title, rows),
                )
        return with_variable(params.context, name, result)

    def resolve_data(self, reference: str, context: Mapping[str, Any]) -> Any:
        """
        The value ``dataVariable`` points at.

        A dotted path into the context wins; otherwise the text is rendered
        as a template, and a JSON result is parsed.
        """
        path = reference.replace("{{", "").replace("}}", "").strip()
        value: Any = None
        if _PATH.match(path):
            value = context
            for part in path.split("."):
                if isinstance(value, Mapping) and part in value:
                    value = value[part]
                else:
                    value = None
                    break
        if value is None:
            value = self.render(reference, context)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                return value
            if isinstance(parsed, (dict, list)):
                return parsed
        return value

    def _token(self, params: ExecutorInput) -> dict[str, Any]:
        secret = self.resolve_secret(self.credentials, params)
        try:
            token = json.loads(secret)
        except json.JSONDecodeError as e:
            raise ConfigurationError("Google Sheets node: credential is not a token JSON") from e
        if not isinstance(token, dict) or not token.get("access_token"):
            raise ConfigurationError('Google Sheets node: credential has no "access_token"')
        return token
