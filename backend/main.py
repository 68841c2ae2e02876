"""Family Tree backend.

FastAPI server that owns the family graph for the browser canvas: it applies
edits, computes generations, aligned layouts and fork junctions, and persists
the graph for reloads, share links and JSON export.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables before logging is configured
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("familytree")

from fastapi import FastAPI, HTTPException, UploadFile, File, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from family_graph import EXPORT_FILENAME, NEW_MEMBER_LABEL, Viewport
from persistence import LocalStore, load_background_image, save_background_image
from tools import MemberNotFoundError, TreeEditor

DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://localhost:3000,http://127.0.0.1:5173"

# Global state
current_editor: TreeEditor | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - open the local store and the editing session."""
    global current_editor

    data_dir = os.getenv("FAMILY_TREE_DATA_DIR", "./data")
    logger.info(f"Using data directory: {data_dir}")
    current_editor = TreeEditor(LocalStore(data_dir))
    current_editor.load_initial()

    yield

    logger.info("Shutting down editing session")
    current_editor = None


# Create FastAPI app
app = FastAPI(
    title="Family Tree",
    description="Family relationship graph with generation-aligned layout",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("FAMILY_TREE_CORS_ORIGINS", DEFAULT_CORS_ORIGINS).split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request/Response models
class LoadRequest(BaseModel):
    """Initial load request carrying the page URL (may hold a shared tree)."""
    url: str | None = None


class LoadResponse(BaseModel):
    """Graph the canvas should start with."""
    tree: dict
    from_shared_link: bool
    clean_url: str | None


class AddMemberRequest(BaseModel):
    """Canvas click that creates a member; x/y is the click point."""
    x: float
    y: float
    label: str = NEW_MEMBER_LABEL


class UpdateMemberRequest(BaseModel):
    """Rename and/or move a member."""
    label: str | None = None
    x: float | None = None
    y: float | None = None


class ConnectRequest(BaseModel):
    """Connect gesture: source becomes a parent of target."""
    source: str
    target: str


class ConnectResponse(BaseModel):
    added: bool
    edge: dict | None = None


class BackgroundRequest(BaseModel):
    data_url: str | None = None


def _require_editor() -> TreeEditor:
    if not current_editor:
        logger.error("Editing session not initialized")
        raise HTTPException(status_code=503, detail="Editing session not initialized")
    return current_editor


# Endpoints

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "session_ready": current_editor is not None,
    }


@app.post("/session/load", response_model=LoadResponse)
async def load_session(request: LoadRequest):
    """Load the shared tree from the page URL, or the stored tree if there is none."""
    editor = _require_editor()
    clean_url = editor.load_initial(request.url)
    return LoadResponse(
        tree=editor.payload(),
        from_shared_link=editor.from_shared_link,
        clean_url=clean_url,
    )


@app.get("/tree")
async def get_tree():
    """Current share payload."""
    return _require_editor().payload()


@app.delete("/tree")
async def clear_tree():
    """Remove every member and edge and forget the stored tree."""
    editor = _require_editor()
    editor.clear()
    return editor.payload()


@app.get("/tree/view")
async def get_tree_view():
    """Members with generations and parent labels, and fork-annotated edges."""
    return _require_editor().view()


@app.post("/members")
async def add_member(request: AddMemberRequest):
    editor = _require_editor()
    member = editor.add_member(request.x, request.y, request.label)
    return member.to_payload()


@app.patch("/members/{member_id}")
async def update_member(member_id: str, request: UpdateMemberRequest):
    editor = _require_editor()
    try:
        if request.label is not None:
            editor.rename_member(member_id, request.label)
        if request.x is not None or request.y is not None:
            current = editor.get_member(member_id).position
            editor.move_member(
                member_id,
                request.x if request.x is not None else current.x,
                request.y if request.y is not None else current.y,
            )
        return editor.get_member(member_id).to_payload()
    except MemberNotFoundError as e:
        logger.warning(str(e))
        raise HTTPException(status_code=404, detail=str(e))


@app.delete("/members/{member_id}")
async def delete_member(member_id: str):
    editor = _require_editor()
    try:
        editor.delete_member(member_id)
    except MemberNotFoundError as e:
        logger.warning(str(e))
        raise HTTPException(status_code=404, detail=str(e))
    return editor.payload()


@app.post("/edges", response_model=ConnectResponse)
async def connect_members(request: ConnectRequest):
    editor = _require_editor()
    edge = editor.connect(request.source, request.target)
    if edge is None:
        return ConnectResponse(added=False)
    return ConnectResponse(added=True, edge=edge.to_payload())


@app.delete("/edges/{edge_id}")
async def delete_edge(edge_id: str):
    editor = _require_editor()
    removed = editor.delete_edges([edge_id])
    if not removed:
        raise HTTPException(status_code=404, detail=f"Edge not found: '{edge_id}'")
    return editor.payload()


@app.post("/align")
async def align_tree():
    """Place every member on its generation row."""
    editor = _require_editor()
    editor.align()
    return editor.payload()


@app.put("/viewport")
async def set_viewport(viewport: Viewport):
    editor = _require_editor()
    editor.set_viewport(viewport)
    return editor.payload()["viewport"]


@app.put("/settings")
async def update_settings(changes: dict):
    """Partial settings update; invalid fields keep their current value."""
    editor = _require_editor()
    return editor.update_settings(changes).to_payload()


@app.get("/share-link")
async def get_share_link(base_url: str = Query(..., description="Page URL the link should open")):
    return {"url": _require_editor().share_url(base_url)}


@app.get("/export")
async def export_tree():
    """Download the tree as a JSON file."""
    editor = _require_editor()
    logger.info("Exporting tree as JSON")
    return Response(
        content=editor.export_json(),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{EXPORT_FILENAME}"'},
    )


@app.post("/import")
async def import_tree(file: UploadFile = File(...)):
    """Replace the current tree with an exported JSON file."""
    editor = _require_editor()

    logger.info(f"Received tree file upload: {file.filename}")

    if not file.filename or not file.filename.endswith(".json"):
        logger.warning(f"Invalid file type: {file.filename}")
        raise HTTPException(status_code=400, detail="File must be a JSON export (.json)")

    content = await file.read()
    try:
        content_str = content.decode("utf-8")
    except UnicodeDecodeError:
        logger.info("UTF-8 decode failed, trying latin-1 encoding")
        content_str = content.decode("latin-1")

    result = editor.import_json(content_str)
    logger.info(f"Imported tree with {len(result.members)} members")
    return editor.payload()


@app.get("/background")
async def get_background():
    return {"data_url": load_background_image(_require_editor().store)}


@app.put("/background")
async def set_background(request: BackgroundRequest):
    save_background_image(_require_editor().store, request.data_url)
    return {"data_url": request.data_url or None}


@app.delete("/background")
async def delete_background():
    save_background_image(_require_editor().store, None)
    return {"data_url": None}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
