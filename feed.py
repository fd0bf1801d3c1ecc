"""Social feed.

Routes:
- GET    /api/feed?page=&limit=&user_id=
- POST   /api/feed                             {"content", "images", "is_public"}
- GET    /api/feed/<id>
- PUT    /api/feed/<id>                        (author only)
- DELETE /api/feed/<id>                        (author or feed.moderate)
- POST   /api/feed/<id>/like
- DELETE /api/feed/<id>/like
- GET    /api/feed/<id>/comments?page=&limit=
- POST   /api/feed/<id>/comments               {"content"}
- DELETE /api/feed/<id>/comments/<comment_id>  (comment author or feed.moderate)
- POST   /api/feed/<id>/pin                    {"pinned": true|false} (feed.moderate)

Private posts are only visible to their author; to everyone else they 404.
"""

import math

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from auth import current_user, require_permission, require_user
from extensions import db, limiter
from models_feed import (
    MAX_COMMENT_LENGTH,
    MAX_POST_IMAGES,
    MAX_POST_LENGTH,
    Post,
    PostComment,
    PostLike,
)
from models_notifications import NOTIF_SOCIAL
from models_users import User
from notifications import notify
from rbac import has_permission


feed_api = Blueprint("feed_api", __name__)


def _page_args():
    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = max(1, min(int(request.args.get("limit", 20)), 100))
    except (TypeError, ValueError):
        page, limit = 1, 20
    return page, limit


def _pagination(page, limit, total):
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}


def _authors(user_ids) -> dict[int, dict]:
    ids = set(user_ids)
    if not ids:
        return {}
    return {
        u.id: {"id": u.id, "name": u.name, "avatar": u.avatar, "level": u.level, "package_tier": u.package_tier}
        for u in User.query.filter(User.id.in_(ids)).all()
    }


def _visible_post(post_id: int, viewer) -> Post | None:
    post = db.session.get(Post, post_id)
    if not post:
        return None
    if not post.is_public and (viewer is None or viewer.id != post.user_id):
        return None
    return post


def _can_moderate(user) -> bool:
    return has_permission(user.role, "feed.moderate")


def _parse_images(raw) -> tuple[list[str] | None, str | None]:
    if raw is None:
        return [], None
    if not isinstance(raw, list) or len(raw) > MAX_POST_IMAGES:
        return None, f"images must be a list of at most {MAX_POST_IMAGES} URLs"
    out = []
    for url in raw:
        if not isinstance(url, str) or not url.startswith(("https://", "http://")) or len(url) > 500:
            return None, "images must be http(s) URLs"
        out.append(url)
    return out, None


def _serialize_post(post: Post, viewer, authors: dict, liked: set) -> dict:
    out = post.to_dict()
    out["user"] = authors.get(post.user_id)
    out["is_liked"] = post.id in liked
    out["is_owner"] = viewer is not None and viewer.id == post.user_id
    return out


def _serialize_comment(comment: PostComment, viewer, authors: dict) -> dict:
    out = comment.to_dict()
    out["user"] = authors.get(comment.user_id)
    out["is_owner"] = viewer is not None and viewer.id == comment.user_id
    return out


def _liked_post_ids(viewer, post_ids) -> set:
    if viewer is None or not post_ids:
        return set()
    rows = PostLike.query.filter(PostLike.user_id == viewer.id, PostLike.post_id.in_(post_ids)).all()
    return {r.post_id for r in rows}


@feed_api.get("/api/feed")
def list_posts():
    viewer = current_user()
    page, limit = _page_args()

    q = Post.query
    try:
        author_id = int(request.args["user_id"]) if request.args.get("user_id") else None
    except ValueError:
        return jsonify({"success": False, "error": "user_id must be an integer"}), 400
    if author_id is not None:
        q = q.filter(Post.user_id == author_id)
    if author_id is None or viewer is None or viewer.id != author_id:
        q = q.filter(Post.is_public.is_(True))

    total = q.count()
    posts = (
        q.order_by(Post.is_pinned.desc(), Post.created_at.desc(), Post.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    authors = _authors(p.user_id for p in posts)
    liked = _liked_post_ids(viewer, [p.id for p in posts])
    return jsonify({
        "success": True,
        "posts": [_serialize_post(p, viewer, authors, liked) for p in posts],
        "pagination": _pagination(page, limit, total),
    })


@feed_api.post("/api/feed")
@limiter.limit("20 per hour")
def create_post():
    user, err = require_user()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    content = data.get("content")
    if not isinstance(content, str) or not content.strip():
        return jsonify({"success": False, "error": "Post content is required"}), 400
    if len(content) > MAX_POST_LENGTH:
        return jsonify({"success": False, "error": f"Post content cannot exceed {MAX_POST_LENGTH} characters"}), 400
    images, error = _parse_images(data.get("images"))
    if error:
        return jsonify({"success": False, "error": error}), 400

    post = Post(user_id=user.id, content=content.strip(), is_public=data.get("is_public") is not False)
    post.images = images
    db.session.add(post)
    db.session.commit()

    return jsonify({
        "success": True,
        "post": _serialize_post(post, user, _authors([user.id]), set()),
        "message": "Post created successfully",
    }), 201


@feed_api.get("/api/feed/<int:post_id>")
def get_post(post_id: int):
    viewer = current_user()
    post = _visible_post(post_id, viewer)
    if not post:
        return jsonify({"success": False, "error": "Post not found"}), 404

    comments = post.comments[:20]
    authors = _authors([post.user_id] + [c.user_id for c in comments])
    out = _serialize_post(post, viewer, authors, _liked_post_ids(viewer, [post.id]))
    out["comments"] = [_serialize_comment(c, viewer, authors) for c in comments]
    return jsonify({"success": True, "post": out})


@feed_api.put("/api/feed/<int:post_id>")
def update_post(post_id: int):
    user, err = require_user()
    if err:
        return err

    post = _visible_post(post_id, user)
    if not post:
        return jsonify({"success": False, "error": "Post not found"}), 404
    if post.user_id != user.id:
        return jsonify({"success": False, "error": "Not authorized"}), 403

    data = request.get_json(silent=True) or {}
    if "content" in data:
        content = data.get("content")
        if not isinstance(content, str) or not content.strip():
            return jsonify({"success": False, "error": "Post content is required"}), 400
        if len(content) > MAX_POST_LENGTH:
            return jsonify({"success": False, "error": f"Post content cannot exceed {MAX_POST_LENGTH} characters"}), 400
    images = None
    if "images" in data:
        images, error = _parse_images(data.get("images"))
        if error:
            return jsonify({"success": False, "error": error}), 400

    if "content" in data:
        post.content = data["content"].strip()
    if images is not None:
        post.images = images
    if "is_public" in data:
        post.is_public = bool(data.get("is_public"))
    db.session.commit()

    return jsonify({
        "success": True,
        "post": _serialize_post(post, user, _authors([user.id]), _liked_post_ids(user, [post.id])),
        "message": "Post updated successfully",
    })


@feed_api.delete("/api/feed/<int:post_id>")
def delete_post(post_id: int):
    user, err = require_user()
    if err:
        return err

    post = db.session.get(Post, post_id)
    if not post or (post.user_id != user.id and not post.is_public and not _can_moderate(user)):
        return jsonify({"success": False, "error": "Post not found"}), 404
    if post.user_id != user.id and not _can_moderate(user):
        return jsonify({"success": False, "error": "Not authorized"}), 403

    db.session.delete(post)
    db.session.commit()
    if post.user_id != user.id:
        current_app.logger.info("Post %s removed by moderator %s", post_id, user.id)
    return jsonify({"success": True, "message": "Post deleted successfully"})


@feed_api.post("/api/feed/<int:post_id>/like")
@limiter.limit("120 per minute")
def like_post(post_id: int):
    user, err = require_user()
    if err:
        return err

    post = _visible_post(post_id, user)
    if not post:
        return jsonify({"success": False, "error": "Post not found"}), 404
    if PostLike.query.filter_by(post_id=post.id, user_id=user.id).first():
        return jsonify({"success": False, "error": "Already liked"}), 400

    db.session.add(PostLike(post_id=post.id, user_id=user.id))
    post.likes_count = PostLike.query.filter_by(post_id=post.id).count()
    if post.user_id != user.id:
        notify(post.user_id, "New like", f"{user.name} liked your post", NOTIF_SOCIAL, {"post_id": post.id})
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"success": False, "error": "Already liked"}), 400

    return jsonify({"success": True, "liked": True, "likes_count": post.likes_count})


@feed_api.delete("/api/feed/<int:post_id>/like")
def unlike_post(post_id: int):
    user, err = require_user()
    if err:
        return err

    post = _visible_post(post_id, user)
    if not post:
        return jsonify({"success": False, "error": "Post not found"}), 404
    like = PostLike.query.filter_by(post_id=post.id, user_id=user.id).first()
    if not like:
        return jsonify({"success": False, "error": "Not liked"}), 400

    db.session.delete(like)
    post.likes_count = PostLike.query.filter_by(post_id=post.id).count()
    db.session.commit()
    return jsonify({"success": True, "liked": False, "likes_count": post.likes_count})


@feed_api.get("/api/feed/<int:post_id>/comments")
def list_comments(post_id: int):
    viewer = current_user()
    post = _visible_post(post_id, viewer)
    if not post:
        return jsonify({"success": False, "error": "Post not found"}), 404

    page, limit = _page_args()
    q = PostComment.query.filter_by(post_id=post.id)
    total = q.count()
    comments = (
        q.order_by(PostComment.created_at.desc(), PostComment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    authors = _authors(c.user_id for c in comments)
    return jsonify({
        "success": True,
        "comments": [_serialize_comment(c, viewer, authors) for c in comments],
        "pagination": _pagination(page, limit, total),
    })


@feed_api.post("/api/feed/<int:post_id>/comments")
@limiter.limit("30 per minute")
def add_comment(post_id: int):
    user, err = require_user()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    content = data.get("content")
    if not isinstance(content, str) or not content.strip():
        return jsonify({"success": False, "error": "Comment content is required"}), 400
    if len(content) > MAX_COMMENT_LENGTH:
        return jsonify({"success": False, "error": f"Comment cannot exceed {MAX_COMMENT_LENGTH} characters"}), 400

    post = _visible_post(post_id, user)
    if not post:
        return jsonify({"success": False, "error": "Post not found"}), 404

    comment = PostComment(post_id=post.id, user_id=user.id, content=content.strip())
    db.session.add(comment)
    post.comments_count = int(post.comments_count or 0) + 1
    if post.user_id != user.id:
        notify(post.user_id, "New comment", f"{user.name} commented on your post", NOTIF_SOCIAL, {"post_id": post.id})
    db.session.commit()

    return jsonify({
        "success": True,
        "comment": _serialize_comment(comment, user, _authors([user.id])),
        "comments_count": post.comments_count,
        "message": "Comment added successfully",
    }), 201


@feed_api.delete("/api/feed/<int:post_id>/comments/<int:comment_id>")
def delete_comment(post_id: int, comment_id: int):
    user, err = require_user()
    if err:
        return err

    comment = db.session.get(PostComment, comment_id)
    if not comment or comment.post_id != post_id:
        return jsonify({"success": False, "error": "Comment not found"}), 404
    if comment.user_id != user.id and not _can_moderate(user):
        return jsonify({"success": False, "error": "Not authorized"}), 403

    post = db.session.get(Post, post_id)
    db.session.delete(comment)
    if post:
        post.comments_count = max(0, int(post.comments_count or 0) - 1)
    db.session.commit()
    return jsonify({"success": True, "message": "Comment deleted successfully"})


@feed_api.post("/api/feed/<int:post_id>/pin")
def pin_post(post_id: int):
    moderator, err = require_permission("feed.moderate")
    if err:
        return err

    post = db.session.get(Post, post_id)
    if not post:
        return jsonify({"success": False, "error": "Post not found"}), 404

    data = request.get_json(silent=True) or {}
    post.is_pinned = bool(data.get("pinned", True))
    db.session.commit()
    current_app.logger.info("Post %s pinned=%s by %s", post.id, post.is_pinned, moderator.id)
    return jsonify({"success": True, "post": post.to_dict()})
