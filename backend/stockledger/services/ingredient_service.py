# Overview: Ingredient registry; creation, threshold updates and stock summaries.

from __future__ import annotations

from decimal import Decimal

from ..errors import NotFound
from ..models import BatchStatus, Ingredient
from ..time_utils import utcnow
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    enforce_rules_ingredient,
    quantize_money,
    to_id,
    validate_payload,
)

ZERO = Decimal("0")

# current_stock is never client-writable; stock only moves through batches
INGREDIENT_POLICY = ModelValidationPolicy(
    writable_fields={"name", "unit", "min_stock", "max_stock", "cost_per_unit", "is_active"},
    required_on_create={"name", "unit"},
)


class IngredientService:
    def __init__(self, repo, alert_service=None):
        self.repo = repo
        self.alerts = alert_service

    def create(self, payload: dict) -> Ingredient:
        patch = validate_payload(model=Ingredient, payload=payload, policy=INGREDIENT_POLICY, partial=False)
        enforce_rules_ingredient(patch)
        if self.repo.find_ingredient_by_name(patch["name"]) is not None:
            raise ValidationError(f"Ingredient '{patch['name']}' already exists")

        now = utcnow()
        ingredient = Ingredient(
            name=patch["name"],
            unit=patch["unit"],
            current_stock=Decimal("0.000"),
            min_stock=patch.get("min_stock") if patch.get("min_stock") is not None else Decimal("0.000"),
            max_stock=patch.get("max_stock") if patch.get("max_stock") is not None else Decimal("0.000"),
            cost_per_unit=patch.get("cost_per_unit") if patch.get("cost_per_unit") is not None else Decimal("0.00"),
            is_active=patch.get("is_active", True),
            created_at=now,
            updated_at=now,
        )
        return self.repo.create_ingredient(ingredient)

    def update(self, ingredient_id, payload: dict) -> Ingredient:
        """Patch master data (thresholds, baseline cost, name); never stock."""
        ingredient_id = to_id(ingredient_id, "ingredient_id")
        patch = validate_payload(model=Ingredient, payload=payload, policy=INGREDIENT_POLICY, partial=True)

        def _op(locked):
            ingredient = locked.get(ingredient_id)
            if ingredient is None:
                raise NotFound("Ingredient", ingredient_id)
            if "name" in patch and patch["name"] != ingredient.name:
                existing = self.repo.find_ingredient_by_name(patch["name"])
                if existing is not None and existing.id != ingredient.id:
                    raise ValidationError(f"Ingredient '{patch['name']}' already exists")
            merged = {
                "min_stock": patch.get("min_stock", ingredient.min_stock),
                "max_stock": patch.get("max_stock", ingredient.max_stock),
            }
            enforce_rules_ingredient(merged)
            for key, value in patch.items():
                setattr(ingredient, key, value)
            ingredient.updated_at = utcnow()
            return ingredient

        return self.repo.run_locked([ingredient_id], _op)

    def get(self, ingredient_id) -> Ingredient:
        ingredient_id = to_id(ingredient_id, "ingredient_id")
        ingredient = self.repo.get_ingredient(ingredient_id)
        if ingredient is None:
            raise NotFound("Ingredient", ingredient_id)
        return ingredient

    def list(self, *, active_only: bool = True) -> list[Ingredient]:
        return self.repo.list_ingredients(active_only=active_only)

    def get_summary(self, ingredient_id) -> dict:
        """
        Ingredient plus its live batches, stock value and batch-weighted cost.

        stock_value = SUM(remaining * batch cost); average_cost_per_unit is
        stock_value / current_stock (0 when empty).
        """
        ingredient = self.get(ingredient_id)
        batches = self.repo.list_batches(ingredient.id)
        live = [b for b in batches if b.status != BatchStatus.CONSUMED and b.remaining_quantity > ZERO]

        stock_value = quantize_money(sum((b.remaining_quantity * b.cost_per_unit for b in live), ZERO))
        average = quantize_money(stock_value / ingredient.current_stock) if ingredient.current_stock > ZERO else quantize_money(ZERO)

        summary = {
            **ingredient.to_dict(),
            "stock_value": float(stock_value),
            "average_cost_per_unit": float(average),
            "active_batches": [b.to_dict() for b in live],
            "batch_count": len(batches),
        }
        if self.alerts is not None:
            summary["alerts"] = [a.to_dict() for a in self.alerts.evaluate(ingredient)]
        return summary
