"""Routes for browsing mock data stored by the in-memory repositories."""
from __future__ import annotations

import html
import json
from typing import Any, Dict, Iterable, List, Mapping

from fastapi import APIRouter, HTTPException
from fastapi.responses import HTMLResponse

from styleslot.services.mock_store import UserRecord, get_mock_store

router = APIRouter()


def _stringify(value: Any) -> str:
    """Return a JSON-friendly string representation for table cells."""
    if value is None:
        return ""
    if isinstance(value, (str, int, float, bool)):
        return str(value)
    return json.dumps(value, default=str)


def _build_table(title: str, rows: Iterable[Mapping[str, Any]]) -> str:
    row_list: List[Dict[str, Any]] = [dict(row) for row in rows]
    section_parts = [f"<section><h2>{html.escape(title)}</h2>"]
    if not row_list:
        section_parts.append("<p>No records found.</p></section>")
        return "".join(section_parts)

    columns: List[str] = []
    for row in row_list:
        for key in row.keys():
            if key not in columns:
                columns.append(key)

    header = "".join(f"<th>{html.escape(column)}</th>" for column in columns)
    body_rows: List[str] = []
    for row in row_list:
        cells = [
            f"<td>{html.escape(_stringify(row.get(column)))}</td>" for column in columns
        ]
        body_rows.append("<tr>" + "".join(cells) + "</tr>")
    section_parts.append(
        "<table><thead><tr>"
        + header
        + "</tr></thead><tbody>"
        + "".join(body_rows)
        + "</tbody></table></section>"
    )
    return "".join(section_parts)


def _user_rows(users: Iterable[UserRecord]) -> List[Dict[str, Any]]:
    return [
        {
            "id": user.user_id,
            "name": user.name,
            "username": user.username,
            "role": user.role.value,
            "location": user.location,
        }
        for user in users
    ]


@router.get("/mock-data", response_class=HTMLResponse)
async def view_mock_data() -> HTMLResponse:
    """Render all mock data from the shared in-memory store as HTML tables."""
    store = get_mock_store()

    sections = [
        _build_table("Users", _user_rows(store.users.iter_users())),
        _build_table("Appointments", store.appointments._appointments.values()),
        _build_table("Reviews", store.reviews._reviews.values()),
        _build_table("Conversations", store.conversations._conversations.values()),
        _build_table("Messages", store.conversations.message_rows()),
    ]

    sections_html = "".join(sections)
    html_content = f"""
    <html>
        <head>
            <title>Mock Data Overview</title>
            <style>
                body {{ font-family: Arial, sans-serif; margin: 2rem; }}
                h1 {{ text-align: center; }}
                section {{ margin-bottom: 2rem; }}
                table {{ border-collapse: collapse; width: 100%; }}
                th, td {{ border: 1px solid #ccc; padding: 0.5rem; text-align: left; }}
                th {{ background-color: #f0f0f0; }}
                tbody tr:nth-child(even) {{ background-color: #fafafa; }}
            </style>
        </head>
        <body>
            <h1>Mock Data Overview</h1>
            {sections_html}
        </body>
    </html>
    """

    return HTMLResponse(content=html_content)


@router.delete("/mock-data/{collection}/{record_id}")
async def delete_mock_record(collection: str, record_id: str) -> Dict[str, str]:
    """Remove a record from one of the mock data repositories."""

    store = get_mock_store()
    normalized = collection.strip().lower()

    collection_map = {
        "appointment": ("appointments", store.appointments.delete),
        "appointments": ("appointments", store.appointments.delete),
        "conversation": ("conversations", store.conversations.delete),
        "conversations": ("conversations", store.conversations.delete),
    }

    mapping = collection_map.get(normalized)
    if not mapping:
        raise HTTPException(status_code=404, detail="Unsupported mock data collection")

    canonical_name, delete_fn = mapping
    deleted = await delete_fn(record_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Record not found")

    return {"status": "deleted", "collection": canonical_name, "record_id": record_id}
