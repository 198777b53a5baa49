"""
campus_sync API — FastAPI endpoints.

Exposes mounted views to a rendering client:
- Open / close views (chat, feed, comments, conversations, reactions,
  own items, collections)
- Read snapshots (records + loading/ready/error status)
- Pull-to-refresh, focus, paging
- Optimistic submits (send message, comment, like, save, delete)
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from campus_sync.config import Settings, get_settings
from campus_sync.remote.contract import FetchError, MutationError, RemoteCollectionClient
from campus_sync.remote.local import LocalCollectionClient
from campus_sync.views.base import StoreView
from campus_sync.views.chat import ChatView
from campus_sync.views.collections import CollectionItemsView, CollectionsView
from campus_sync.views.comments import CommentsView
from campus_sync.views.conversations import ConversationsView
from campus_sync.views.feed import FeedView
from campus_sync.views.my_items import MyItemsView
from campus_sync.views.reactions import ReactionsView

logger = logging.getLogger(__name__)


# --- Request/Response Models ---

class ChatOpenRequest(BaseModel):
    other_user_id: str
    me: Optional[str] = None


class UserScopedOpenRequest(BaseModel):
    me: Optional[str] = None


class CommentsOpenRequest(BaseModel):
    item_id: str


class CollectionItemsOpenRequest(BaseModel):
    collection_id: str


class CollectionCreateRequest(BaseModel):
    name: str


class SendMessageRequest(BaseModel):
    text: str


class CommentRequest(BaseModel):
    content: str
    rating: Optional[int] = None


class SubmitRequest(BaseModel):
    row: dict


class UpdateRequest(BaseModel):
    patch: dict


class ArchiveRequest(BaseModel):
    other_user_id: str


# --- Application Factory ---

def create_app(
    client: Optional[RemoteCollectionClient] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()
    views: Dict[str, StoreView] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.client is None:
            if settings.supabase_url and settings.supabase_key:
                from campus_sync.remote.supabase_client import create_supabase_client
                app.state.client = await create_supabase_client(settings)
            else:
                logger.warning("No Supabase credentials configured; using a local store")
                app.state.client = LocalCollectionClient()
        yield
        for view in list(views.values()):
            view.close()
        views.clear()

    app = FastAPI(
        title="campus_sync API",
        description="Reconciled views over the campus marketplace backend",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.client = client
    app.state.settings = settings
    app.state.views = views

    def _client() -> RemoteCollectionClient:
        if app.state.client is None:
            raise HTTPException(503, "Backend client not ready")
        return app.state.client

    async def _me(explicit: Optional[str]) -> str:
        """The session user; an explicit id only stands in when there is none."""
        user = await _client().current_user()
        if user is not None:
            if explicit and explicit != user.id:
                raise HTTPException(403, "Cannot open views as another user")
            return user.id
        if explicit:
            return explicit
        raise HTTPException(401, "Login required")

    def _view(view_id: str) -> StoreView:
        view = views.get(view_id)
        if view is None:
            raise HTTPException(404, "View not found")
        return view

    def _typed(view_id: str, cls):
        view = _view(view_id)
        if not isinstance(view, cls):
            raise HTTPException(400, f"View {view_id} is not a {cls.name} view")
        return view

    async def _render(view_id: str, view: StoreView) -> dict:
        await view.store.settle()
        body = {
            "view_id": view_id,
            "kind": view.name,
            "snapshot": view.snapshot().model_dump(mode="json"),
        }
        if view.subscription_error:
            body["subscription_error"] = view.subscription_error
        if isinstance(view, ConversationsView):
            body["active"] = [c.model_dump(mode="json") for c in view.active]
            body["archived"] = [c.model_dump(mode="json") for c in view.archived]
        if isinstance(view, ReactionsView):
            body["liked_items"] = sorted(view.liked_items)
        if isinstance(view, CollectionItemsView):
            body["items"] = view.items
        return body

    async def _mount(view: StoreView) -> dict:
        view_id = f"{view.name}_{uuid4().hex[:12]}"
        views[view_id] = view
        try:
            await view.open()
        except FetchError as e:
            # The view stays mounted in the error state; the client can retry.
            logger.warning("Opening %s failed: %s", view_id, e)
        return await _render(view_id, view)

    # === VIEWS ===

    @app.post("/views/chat")
    async def open_chat(req: ChatOpenRequest):
        """Open a direct-message thread."""
        me = await _me(req.me)
        return await _mount(ChatView(
            _client(), me, req.other_user_id,
            history_limit=settings.chat_history_limit,
            config=settings.store_config(),
        ))

    @app.post("/views/feed")
    async def open_feed():
        """Open the item feed."""
        return await _mount(FeedView(
            _client(), page_size=settings.feed_page_size, config=settings.store_config()
        ))

    @app.post("/views/comments")
    async def open_comments(req: CommentsOpenRequest):
        return await _mount(CommentsView(_client(), req.item_id, config=settings.store_config()))

    @app.post("/views/conversations")
    async def open_conversations(req: UserScopedOpenRequest):
        me = await _me(req.me)
        return await _mount(ConversationsView(
            _client(), me,
            scan_limit=settings.conversation_scan_limit,
            config=settings.store_config(),
        ))

    @app.post("/views/reactions")
    async def open_reactions(req: UserScopedOpenRequest):
        me = await _me(req.me)
        return await _mount(ReactionsView(_client(), me, config=settings.store_config()))

    @app.post("/views/my_items")
    async def open_my_items(req: UserScopedOpenRequest):
        me = await _me(req.me)
        return await _mount(MyItemsView(_client(), me, config=settings.store_config()))

    @app.post("/views/collections")
    async def open_collections(req: UserScopedOpenRequest):
        me = await _me(req.me)
        return await _mount(CollectionsView(_client(), me, config=settings.store_config()))

    @app.post("/views/collection_items")
    async def open_collection_items(req: CollectionItemsOpenRequest):
        return await _mount(CollectionItemsView(
            _client(), req.collection_id, config=settings.store_config()
        ))

    @app.get("/views")
    def list_views():
        """All mounted views."""
        return [
            {"view_id": vid, "kind": v.name, "status": v.status.value}
            for vid, v in views.items()
        ]

    @app.get("/views/{view_id}")
    async def get_view(view_id: str):
        """Current snapshot of a view."""
        return await _render(view_id, _view(view_id))

    @app.delete("/views/{view_id}")
    def close_view(view_id: str):
        """Unmount a view, releasing its change feed."""
        view = views.pop(view_id, None)
        if view is None:
            raise HTTPException(404, "View not found")
        view.close()
        return {"status": "closed", "view_id": view_id}

    @app.post("/views/{view_id}/refresh")
    async def refresh_view(view_id: str):
        """Pull-to-refresh (or retry after an error)."""
        view = _view(view_id)
        try:
            await view.refresh()
        except FetchError as e:
            raise HTTPException(502, str(e))
        return await _render(view_id, view)

    @app.post("/views/{view_id}/focus")
    async def focus_view(view_id: str):
        view = _view(view_id)
        try:
            await view.focus()
        except FetchError as e:
            raise HTTPException(502, str(e))
        return await _render(view_id, view)

    @app.post("/views/{view_id}/more")
    async def load_more(view_id: str):
        view = _typed(view_id, FeedView)
        try:
            added = await view.load_more()
        except FetchError as e:
            raise HTTPException(502, str(e))
        body = await _render(view_id, view)
        body["added"] = len(added)
        return body

    # === MUTATIONS ===

    @app.post("/views/{view_id}/records")
    async def submit_record(view_id: str, req: SubmitRequest):
        """Generic optimistic insert into a view's table."""
        view = _view(view_id)
        try:
            record = await view.store.submit(req.row)
        except MutationError as e:
            raise HTTPException(502, str(e))
        body = await _render(view_id, view)
        body["record"] = record.model_dump(mode="json")
        return body

    @app.patch("/views/{view_id}/records/{record_id}")
    async def update_record(view_id: str, record_id: str, req: UpdateRequest):
        view = _view(view_id)
        try:
            await view.store.submit_update(record_id, req.patch)
        except KeyError:
            raise HTTPException(404, "Record not found")
        except MutationError as e:
            raise HTTPException(502, str(e))
        return await _render(view_id, view)

    @app.delete("/views/{view_id}/records/{record_id}")
    async def delete_record(view_id: str, record_id: str):
        """Owner-checked delete for items and comments; plain delete otherwise."""
        view = _view(view_id)
        try:
            if isinstance(view, (FeedView, MyItemsView)):
                await view.delete_item(record_id)
            elif isinstance(view, CommentsView):
                await view.delete_comment(record_id)
            elif isinstance(view, CollectionsView):
                await view.delete(record_id)
            else:
                await view.store.submit_delete(record_id)
        except KeyError:
            raise HTTPException(404, "Record not found")
        except PermissionError as e:
            raise HTTPException(403, str(e))
        except MutationError as e:
            raise HTTPException(502, str(e))
        return await _render(view_id, view)

    @app.post("/views/{view_id}/messages")
    async def send_message(view_id: str, req: SendMessageRequest):
        view = _typed(view_id, ChatView)
        try:
            record = await view.send(req.text)
        except MutationError as e:
            raise HTTPException(502, str(e))
        if record is None:
            raise HTTPException(400, "Message is empty")
        return await _render(view_id, view)

    @app.post("/views/{view_id}/comments")
    async def add_comment(view_id: str, req: CommentRequest):
        view = _typed(view_id, CommentsView)
        try:
            await view.add_comment(req.content, req.rating)
        except ValueError as e:
            raise HTTPException(400, str(e))
        except PermissionError as e:
            raise HTTPException(401, str(e))
        except MutationError as e:
            raise HTTPException(502, str(e))
        return await _render(view_id, view)

    @app.post("/views/{view_id}/likes/{item_id}")
    async def toggle_like(view_id: str, item_id: str):
        view = _typed(view_id, ReactionsView)
        try:
            liked = await view.toggle(item_id)
        except MutationError as e:
            raise HTTPException(502, str(e))
        body = await _render(view_id, view)
        body["liked"] = liked
        return body

    @app.post("/views/{view_id}/collections")
    async def create_collection(view_id: str, req: CollectionCreateRequest):
        view = _typed(view_id, CollectionsView)
        try:
            record = await view.create(req.name)
        except ValueError as e:
            raise HTTPException(400, str(e))
        except MutationError as e:
            raise HTTPException(502, str(e))
        body = await _render(view_id, view)
        body["record"] = record.model_dump(mode="json")
        return body

    @app.post("/views/{view_id}/saved/{item_id}")
    async def save_to_collection(view_id: str, item_id: str):
        view = _typed(view_id, CollectionItemsView)
        try:
            await view.add(item_id)
        except MutationError as e:
            raise HTTPException(502, str(e))
        return await _render(view_id, view)

    @app.delete("/views/{view_id}/saved/{item_id}")
    async def remove_from_collection(view_id: str, item_id: str):
        view = _typed(view_id, CollectionItemsView)
        try:
            await view.remove(item_id)
        except KeyError:
            raise HTTPException(404, "Item not in collection")
        except MutationError as e:
            raise HTTPException(502, str(e))
        return await _render(view_id, view)

    @app.post("/views/{view_id}/archive")
    async def archive_conversation(view_id: str, req: ArchiveRequest):
        view = _typed(view_id, ConversationsView)
        try:
            await view.archive(req.other_user_id)
        except MutationError as e:
            raise HTTPException(502, str(e))
        return await _render(view_id, view)

    @app.post("/views/{view_id}/unarchive")
    async def unarchive_conversation(view_id: str, req: ArchiveRequest):
        view = _typed(view_id, ConversationsView)
        try:
            await view.unarchive(req.other_user_id)
        except MutationError as e:
            raise HTTPException(502, str(e))
        return await _render(view_id, view)

    @app.get("/health")
    def health():
        return {"status": "ok", "views": len(views)}

    return app


# Default application instance
app = create_app()
