"""GitHub Projects (v2) work item source, driven through the ``gh`` CLI."""

import json
import logging
import subprocess
from collections.abc import Sequence
from datetime import date

from issue_orchestrator.core.source import SourceError
from issue_orchestrator.db.models import (
    FieldValue,
    IterationValue,
    NumberValue,
    SingleSelectValue,
    TextValue,
    WorkItem,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class GitHubError(SourceError):
    """Raised when a gh command or GraphQL request fails."""


def run_gh(args: list[str], input: str | None = None) -> str:
    """Run a gh command and return stdout. Raises GitHubError on failure."""
    cmd = ["gh"] + args
    try:
        result = subprocess.run(
            cmd,
            input=input,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitHubError(f"gh {' '.join(args[:2])} failed: {e.stderr.strip()}") from e
    except FileNotFoundError as e:
        raise GitHubError("gh CLI not found on PATH") from e


def graphql(query: str, variables: dict | None = None) -> dict:
    payload = json.dumps({"query": query, "variables": variables or {}})
    output = run_gh(["api", "graphql", "--input", "-"], input=payload)
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise GitHubError(f"Invalid GraphQL response: {output[:200]}") from e
    if data.get("errors"):
        messages = "; ".join(err.get("message", "?") for err in data["errors"])
        raise GitHubError(f"GraphQL error: {messages}")
    return data.get("data") or {}


# ── Field value decoding ────────────────────────────────────────────────────


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def decode_field_value(node: dict) -> tuple[str, FieldValue] | None:
    """Decode one ``fieldValues`` node into (field name, typed value)."""
    field_name = (node.get("field") or {}).get("name")
    if not field_name:
        return None
    kind = node.get("__typename")
    if kind == "ProjectV2ItemFieldSingleSelectValue":
        return field_name, SingleSelectValue(node.get("name") or "", node.get("optionId"))
    if kind == "ProjectV2ItemFieldTextValue":
        return field_name, TextValue(node.get("text") or "")
    if kind == "ProjectV2ItemFieldNumberValue":
        if node.get("number") is None:
            return None
        return field_name, NumberValue(float(node["number"]))
    if kind == "ProjectV2ItemFieldIterationValue":
        return field_name, IterationValue(
            node.get("title") or "", _parse_date(node.get("startDate"))
        )
    return None


def _field_text(value: FieldValue | None) -> str | None:
    if isinstance(value, SingleSelectValue):
        return value.name or None
    if isinstance(value, TextValue):
        return value.text or None
    if isinstance(value, IterationValue):
        return value.title or None
    if isinstance(value, NumberValue):
        return str(value.number)
    return None


# ── Queries ─────────────────────────────────────────────────────────────────


ITEMS_QUERY = """
query($project: ID!, $cursor: String) {
  node(id: $project) {
    ... on ProjectV2 {
      items(first: %d, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          content {
            ... on Issue {
              number
              title
              body
              labels(first: 20) { nodes { name } }
            }
          }
          fieldValues(first: 30) {
            nodes {
              __typename
              ... on ProjectV2ItemFieldSingleSelectValue {
                name optionId
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldTextValue {
                text
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldNumberValue {
                number
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldIterationValue {
                title startDate
                field { ... on ProjectV2FieldCommon { name } }
              }
            }
          }
        }
      }
    }
  }
}
""" % PAGE_SIZE

FIELDS_QUERY = """
query($project: ID!) {
  node(id: $project) {
    ... on ProjectV2 {
      fields(first: 50) {
        nodes {
          ... on ProjectV2FieldCommon { id name }
          ... on ProjectV2SingleSelectField { id name options { id name } }
        }
      }
    }
  }
}
"""

UPDATE_FIELD_MUTATION = """
mutation($project: ID!, $item: ID!, $field: ID!, $value: ProjectV2FieldValue!) {
  updateProjectV2ItemFieldValue(input: {
    projectId: $project, itemId: $item, fieldId: $field, value: $value
  }) { projectV2Item { id } }
}
"""

CLEAR_FIELD_MUTATION = """
mutation($project: ID!, $item: ID!, $field: ID!) {
  clearProjectV2ItemFieldValue(input: {
    projectId: $project, itemId: $item, fieldId: $field
  }) { projectV2Item { id } }
}
"""


class GitHubProjectSource:
    """Work items are the issues on one GitHub Projects v2 board.

    Status and claim live in project fields (a single-select and a text field).
    """

    def __init__(
        self,
        repo: str,
        project_id: str,
        status_field: str = "Status",
        claim_field: str = "Assigned Instance",
    ):
        self.repo = repo
        self.project_id = project_id
        self.status_field = status_field
        self.claim_field = claim_field
        self._fields: dict[str, dict] | None = None
        self._item_refs: dict[int, str] = {}

    def _node_to_item(self, node: dict) -> WorkItem | None:
        content = node.get("content") or {}
        number = content.get("number")
        if number is None:
            return None  # Draft issues and pull requests are not work items
        fields: dict[str, FieldValue] = {}
        for fv in (node.get("fieldValues") or {}).get("nodes") or []:
            decoded = decode_field_value(fv or {})
            if decoded:
                fields[decoded[0]] = decoded[1]
        labels = [l["name"] for l in (content.get("labels") or {}).get("nodes") or []]
        return WorkItem(
            id=number,
            title=content.get("title") or "",
            body=content.get("body") or "",
            status=_field_text(fields.get(self.status_field)),
            claimed_by=_field_text(fields.get(self.claim_field)),
            labels=labels,
            fields=fields,
            tracker_ref=node["id"],
        )

    def fetch_all(self) -> list[WorkItem]:
        """Every issue on the board, following pagination, each once."""
        items: list[WorkItem] = []
        seen: set[int] = set()
        cursor = None
        while True:
            data = graphql(ITEMS_QUERY, {"project": self.project_id, "cursor": cursor})
            page = ((data.get("node") or {}).get("items")) or {}
            for node in page.get("nodes") or []:
                item = self._node_to_item(node or {})
                if item is None or item.id in seen:
                    continue
                seen.add(item.id)
                self._item_refs[item.id] = item.tracker_ref
                items.append(item)
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                break
            cursor = info.get("endCursor")
        return items

    def fetch_eligible(self, statuses: Sequence[str]) -> list[WorkItem]:
        wanted = set(statuses)
        return [i for i in self.fetch_all() if i.status in wanted]

    def fetch_by_id(self, item_id: int) -> WorkItem:
        for item in self.fetch_all():
            if item.id == item_id:
                return item
        raise GitHubError(f"Issue #{item_id} is not on project {self.project_id}")

    # ── Field writes ──

    def _load_fields(self) -> dict[str, dict]:
        if self._fields is None:
            data = graphql(FIELDS_QUERY, {"project": self.project_id})
            nodes = ((data.get("node") or {}).get("fields") or {}).get("nodes") or []
            self._fields = {n["name"]: n for n in nodes if n and n.get("name")}
        return self._fields

    def _field(self, name: str) -> dict:
        field = self._load_fields().get(name)
        if not field:
            raise GitHubError(f"Project field '{name}' not found")
        return field

    def _item_ref(self, item_id: int) -> str:
        if item_id not in self._item_refs:
            self.fetch_by_id(item_id)
        return self._item_refs[item_id]

    def set_status(self, item_id: int, status: str) -> None:
        field = self._field(self.status_field)
        option = next(
            (o for o in field.get("options") or [] if o["name"] == status), None
        )
        if option is None:
            raise GitHubError(f"Status '{status}' is not an option of '{self.status_field}'")
        graphql(UPDATE_FIELD_MUTATION, {
            "project": self.project_id,
            "item": self._item_ref(item_id),
            "field": field["id"],
            "value": {"singleSelectOptionId": option["id"]},
        })
        logger.info("Issue #%s status -> %s", item_id, status)

    def set_claim(self, item_id: int, token: str | None) -> None:
        field = self._field(self.claim_field)
        variables = {
            "project": self.project_id,
            "item": self._item_ref(item_id),
            "field": field["id"],
        }
        if token:
            graphql(UPDATE_FIELD_MUTATION, {**variables, "value": {"text": token}})
        else:
            graphql(CLEAR_FIELD_MUTATION, variables)
        logger.info("Issue #%s claim -> %s", item_id, token or "(cleared)")

    def get_claim(self, item_id: int) -> str | None:
        return self.fetch_by_id(item_id).claimed_by

    def post_comment(self, item_id: int, body: str) -> None:
        run_gh(["issue", "comment", str(item_id), "--repo", self.repo, "--body", body])
