"""Fixed registry of slide layouts and the slots each template expects."""

from typing import Dict, Optional

from paperdeck.models.schemas import LayoutSchema, Slot


def _layout(layout_id: str, *slots: Slot) -> LayoutSchema:
    return LayoutSchema(id=layout_id, template_file=f"{layout_id}.html", slots=list(slots))


TITLE = Slot(name="title", kind="text", required=True)
BODY = Slot(name="body", kind="html", required=True)
IMAGE = Slot(name="image", kind="image", required=True)
TABLE = Slot(name="table", kind="html", required=True)
NOTE = Slot(name="note", kind="html", required=False)

LAYOUT_SCHEMAS: Dict[str, LayoutSchema] = {
    schema.id: schema
    for schema in (
        _layout("text-focus", TITLE, BODY),
        _layout("image-right", TITLE, BODY, IMAGE),
        _layout("image-left", TITLE, BODY, IMAGE),
        _layout("image-bottom", TITLE, BODY, IMAGE),
        _layout("table-focus", TITLE, TABLE, NOTE),
        _layout(
            "two-columns",
            TITLE,
            Slot(name="left", kind="html", required=True),
            Slot(name="right", kind="html", required=True)
        ),
        _layout("table-and-figure", TITLE, TABLE, IMAGE, NOTE),
    )
}


def get_layout(name: Optional[str]) -> Optional[LayoutSchema]:
    if not name:
        return None
    return LAYOUT_SCHEMAS.get(name.strip().lower())
