from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from autoboard.db import Image, Project, Scene, Shot, init_db, make_engine, utcnow
from autoboard.errors import NotFoundError, ValidationError
from autoboard.types import CritiqueResult, ImagePayload, ParsedShot, ShotSpec


def shot_spec(shot: Shot) -> ShotSpec:
    return ShotSpec(
        id=shot.id,
        shot_name=shot.shot_name,
        description=shot.description,
        generation_prompt=shot.nano_prompt,
    )


def image_payload(image: Image) -> ImagePayload:
    return ImagePayload(data=image.content, mime_type=image.mime_type)


def image_critique(image: Image) -> Optional[CritiqueResult]:
    if not image.analysis_result:
        return None
    return CritiqueResult.from_dict(json.loads(image.analysis_result))


class VersionStore:
    """Relational persistence for projects, scenes, shots and image versions.

    Every public method runs in its own transaction. Returned rows are detached
    and safe to read after the session closes.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        init_db(engine)

    @classmethod
    def from_url(cls, url: str) -> "VersionStore":
        return cls(make_engine(url))

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._sessions.begin() as session:
            yield session

    # ---------- Projects ----------
    def create_project(self, name: str) -> Project:
        if not name or not name.strip():
            raise ValidationError("Project name is required")
        with self._transaction() as s:
            project = Project(name=name.strip())
            s.add(project)
        return project

    def list_projects(self) -> List[Project]:
        with self._transaction() as s:
            return list(s.execute(select(Project).order_by(Project.created_at)).scalars().all())

    def delete_project(self, project_id: str) -> None:
        with self._transaction() as s:
            s.execute(delete(Project).where(Project.id == project_id))

    # ---------- Scenes ----------
    def create_scene(self, project_id: str, name: str, description: Optional[str] = None) -> Scene:
        if not name or not name.strip():
            raise ValidationError("Scene name is required")
        with self._transaction() as s:
            if s.get(Project, project_id) is None:
                raise NotFoundError("Project not found", {"project_id": project_id})
            max_order = s.execute(
                select(func.max(Scene.sort_order)).where(Scene.project_id == project_id)
            ).scalar()
            scene = Scene(
                project_id=project_id,
                name=name.strip(),
                description=description,
                sort_order=(max_order + 1) if max_order is not None else 0,
            )
            s.add(scene)
        return scene

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        with self._transaction() as s:
            return s.get(Scene, scene_id)

    def list_scenes(self, project_id: str) -> List[Scene]:
        with self._transaction() as s:
            return list(
                s.execute(
                    select(Scene).where(Scene.project_id == project_id).order_by(Scene.sort_order)
                ).scalars().all()
            )

    def update_scene_description(self, scene_id: str, description: str) -> None:
        with self._transaction() as s:
            scene = s.get(Scene, scene_id)
            if scene is None:
                raise NotFoundError("Scene not found", {"scene_id": scene_id})
            scene.description = description
            scene.updated_at = utcnow()

    def delete_scene(self, scene_id: str) -> None:
        with self._transaction() as s:
            s.execute(delete(Scene).where(Scene.id == scene_id))

    # ---------- Shots ----------
    def insert_shot_batch(self, scene_id: str, parsed: Sequence[ParsedShot]) -> List[ShotSpec]:
        """Append one parse result as a new prompt version; earlier batches stay untouched."""
        with self._transaction() as s:
            if s.get(Scene, scene_id) is None:
                raise NotFoundError("Scene not found", {"scene_id": scene_id})
            max_version = s.execute(
                select(func.max(Shot.prompt_version)).where(Shot.scene_id == scene_id)
            ).scalar()
            prompt_version = (max_version or 0) + 1
            rows = [
                Shot(
                    scene_id=scene_id,
                    shot_name=p.shot_name,
                    description=p.description,
                    nano_prompt=p.nano_prompt,
                    prompt_version=prompt_version,
                    sort_order=index,
                )
                for index, p in enumerate(parsed)
            ]
            s.add_all(rows)
            s.flush()
            return [shot_spec(r) for r in rows]

    def add_shot(self, scene_id: str, shot_name: str, description: str = "", nano_prompt: str = "") -> Shot:
        if not shot_name or not shot_name.strip():
            raise ValidationError("Shot name is required")
        with self._transaction() as s:
            if s.get(Scene, scene_id) is None:
                raise NotFoundError("Scene not found", {"scene_id": scene_id})
            max_order, max_version = s.execute(
                select(func.max(Shot.sort_order), func.max(Shot.prompt_version)).where(Shot.scene_id == scene_id)
            ).one()
            shot = Shot(
                scene_id=scene_id,
                shot_name=shot_name.strip(),
                description=(description or "").strip(),
                nano_prompt=(nano_prompt or "").strip(),
                prompt_version=max_version or 1,
                sort_order=max(0, max_order or 0) + 1,
            )
            s.add(shot)
        return shot

    def get_shot(self, shot_id: str) -> Optional[Shot]:
        with self._transaction() as s:
            return s.get(Shot, shot_id)

    def list_shots(self, scene_id: str, prompt_version: Optional[int] = None) -> List[Shot]:
        """Shots of a scene in display order. Defaults to the latest prompt version."""
        with self._transaction() as s:
            if prompt_version is None:
                prompt_version = s.execute(
                    select(func.max(Shot.prompt_version)).where(Shot.scene_id == scene_id)
                ).scalar()
                if prompt_version is None:
                    return []
            return list(
                s.execute(
                    select(Shot)
                    .where(Shot.scene_id == scene_id, Shot.prompt_version == prompt_version)
                    .order_by(Shot.sort_order, Shot.created_at)
                ).scalars().all()
            )

    def list_prompt_versions(self, scene_id: str) -> List[int]:
        with self._transaction() as s:
            return list(
                s.execute(
                    select(Shot.prompt_version)
                    .where(Shot.scene_id == scene_id)
                    .distinct()
                    .order_by(Shot.prompt_version)
                ).scalars().all()
            )

    def delete_shot(self, shot_id: str) -> None:
        with self._transaction() as s:
            s.execute(delete(Shot).where(Shot.id == shot_id))

    def delete_prompt_version(self, scene_id: str, prompt_version: int) -> int:
        with self._transaction() as s:
            result = s.execute(
                delete(Shot).where(Shot.scene_id == scene_id, Shot.prompt_version == prompt_version)
            )
            return result.rowcount or 0

    def rename(self, kind: str, item_id: str, alias: Optional[str]) -> None:
        """Set the display alias of a project, scene or shot; a blank alias clears it."""
        models = {"project": Project, "scene": Scene, "shot": Shot}
        model = models.get(kind)
        if model is None:
            raise ValidationError("Invalid type", {"type": kind})
        if alias is None:
            raise ValidationError("Missing parameters")
        with self._transaction() as s:
            row = s.get(model, item_id)
            if row is None:
                raise NotFoundError(f"{kind.capitalize()} not found", {"id": item_id})
            row.alias = alias.strip() or None
            if hasattr(row, "updated_at"):
                row.updated_at = utcnow()

    # ---------- Image versions ----------
    def insert_version(
        self,
        shot_id: str,
        image: ImagePayload,
        prompt: str,
        *,
        edit_instruction: Optional[str] = None,
        reference_image_path: Optional[str] = None,
        resolution: Optional[str] = None,
    ) -> Image:
        """Store a new active version for a shot.

        Deactivating the siblings, numbering (max + 1) and inserting happen in one
        transaction. The deactivating UPDATE runs first so SQLite takes the write
        lock before the max is read.
        """
        with self._transaction() as s:
            if s.get(Shot, shot_id) is None:
                raise NotFoundError("Shot not found", {"shot_id": shot_id})
            s.execute(update(Image).where(Image.shot_id == shot_id).values(is_active=False))
            max_version = s.execute(select(func.max(Image.version)).where(Image.shot_id == shot_id)).scalar()
            row = Image(
                shot_id=shot_id,
                content=image.data,
                mime_type=image.mime_type,
                prompt=prompt,
                edit_instruction=edit_instruction,
                reference_image_path=reference_image_path,
                resolution=resolution,
                version=(max_version or 0) + 1,
                is_active=True,
            )
            s.add(row)
        return row

    def attach_critique(self, image_id: str, critique: CritiqueResult) -> None:
        with self._transaction() as s:
            row = s.get(Image, image_id)
            if row is None:
                raise NotFoundError("Image not found", {"image_id": image_id})
            row.analysis_result = json.dumps(critique.to_dict(), ensure_ascii=False)

    def get_version(self, image_id: str) -> Optional[Image]:
        with self._transaction() as s:
            return s.get(Image, image_id)

    def get_active_version(self, shot_id: str) -> Optional[Image]:
        with self._transaction() as s:
            return s.execute(
                select(Image).where(Image.shot_id == shot_id, Image.is_active.is_(True))
            ).scalars().first()

    def list_versions(self, shot_id: str) -> List[Image]:
        with self._transaction() as s:
            return list(
                s.execute(select(Image).where(Image.shot_id == shot_id).order_by(Image.version)).scalars().all()
            )

    def activate_version(self, image_id: str) -> Image:
        with self._transaction() as s:
            row = s.get(Image, image_id)
            if row is None:
                raise NotFoundError("Image not found", {"image_id": image_id})
            s.execute(update(Image).where(Image.shot_id == row.shot_id).values(is_active=False))
            row.is_active = True
        return row
