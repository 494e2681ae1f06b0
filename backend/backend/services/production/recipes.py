from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

import structlog
from sqlalchemy.orm import Session, selectinload

from app.db.models.materials import Recipe, RecipeMaterial, MaterialDefinition
from app.core.errors import NotFound
from app.core.quantities import positive

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BomLine:
    material_id: str
    material_name: str
    unit: str
    quantity_per_unit: Decimal


def get_active_recipe(db: Session, product_id: str) -> Recipe | None:
    return (db.query(Recipe)
            .options(selectinload(Recipe.lines).selectinload(RecipeMaterial.material))
            .filter(Recipe.product_id == product_id, Recipe.is_active == True)  # noqa: E712
            .order_by(Recipe.created_at.desc())
            .first())


def resolve_bom(db: Session, product_id: str) -> list[BomLine] | None:
    """Bill of materials for one unit of the product; None when it has no active recipe."""
    recipe = get_active_recipe(db, product_id)
    if recipe is None:
        return None
    return [
        BomLine(
            material_id=ln.material_id,
            material_name=ln.material.name if ln.material else "Unknown",
            unit=ln.material.unit if ln.material else "pcs",
            quantity_per_unit=Decimal(str(ln.quantity_required)),
        )
        for ln in recipe.lines
    ]


def _checked_lines(db: Session, lines: Iterable[tuple[str, object]]) -> list[tuple[str, Decimal]]:
    checked = []
    for material_id, qty in lines:
        if not db.query(MaterialDefinition.id).filter(MaterialDefinition.id == material_id).first():
            raise NotFound("material", material_id)
        checked.append((material_id, positive(qty, "quantity_required")))
    return checked


def _set_lines(db: Session, recipe: Recipe, lines: list[tuple[str, Decimal]]) -> None:
    recipe.lines.clear()
    db.flush()
    for pos, (material_id, qty) in enumerate(lines):
        recipe.lines.append(RecipeMaterial(material_id=material_id, quantity_required=qty, position=pos))


def get_recipe(db: Session, recipe_id: str) -> Recipe:
    r = db.query(Recipe).filter(Recipe.id == recipe_id).first()
    if not r:
        raise NotFound("recipe", recipe_id)
    return r


def list_recipes(db: Session, *, product_id: str | None = None, include_inactive: bool = False) -> list[Recipe]:
    q = db.query(Recipe).options(selectinload(Recipe.lines).selectinload(RecipeMaterial.material))
    if product_id:
        q = q.filter(Recipe.product_id == product_id)
    if not include_inactive:
        q = q.filter(Recipe.is_active == True)  # noqa: E712
    return q.order_by(Recipe.product_id.asc(), Recipe.created_at.desc()).all()


def create_recipe(db: Session, *, product_id: str, name: str | None = None,
                  lines: Iterable[tuple[str, object]] = (), production_time_minutes: int | None = None) -> Recipe:
    """Register a recipe; the previous active recipe of the product is retired."""
    checked = _checked_lines(db, lines)
    for old in db.query(Recipe).filter(Recipe.product_id == product_id, Recipe.is_active == True).all():  # noqa: E712
        old.is_active = False
    r = Recipe(product_id=product_id, name=name or f"Recipe {product_id}", is_active=True,
               production_time_minutes=production_time_minutes)
    db.add(r)
    db.flush()
    _set_lines(db, r, checked)
    db.commit()
    db.refresh(r)
    logger.info("recipes.created", recipe_id=r.id, product_id=product_id, lines=len(checked))
    return r


def update_recipe(db: Session, recipe_id: str, *, name: str | None = None,
                  lines: Iterable[tuple[str, object]] | None = None,
                  production_time_minutes: int | None = None) -> Recipe:
    """Rename a recipe or replace its lines. Tasks already reserved keep what they consumed."""
    r = get_recipe(db, recipe_id)
    checked = _checked_lines(db, lines) if lines is not None else None
    if name is not None:
        r.name = name
    if production_time_minutes is not None:
        r.production_time_minutes = production_time_minutes
    if checked is not None:
        _set_lines(db, r, checked)
    db.commit()
    db.refresh(r)
    logger.info("recipes.updated", recipe_id=r.id, product_id=r.product_id, lines_replaced=checked is not None)
    return r


def delete_recipe(db: Session, recipe_id: str) -> None:
    r = get_recipe(db, recipe_id)
    product_id = r.product_id
    db.delete(r)
    db.commit()
    logger.info("recipes.deleted", recipe_id=recipe_id, product_id=product_id)

def required_materials(bom: Iterable[BomLine], quantity: Decimal) -> dict[str, tuple[str, Decimal]]:
    """Total need per material for `quantity` units; repeated lines are summed."""
    merged: dict[str, tuple[str, Decimal]] = {}
    for line in bom:
        name, required = merged.get(line.material_id, (line.material_name, Decimal("0")))
        merged[line.material_id] = (name, required + line.quantity_per_unit * quantity)
    return merged
