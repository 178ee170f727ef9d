"""
Module ORM Registry (``mealbox_modules._orm_registry``).

Responsibility
--------------
Ensure every module-level SQLAlchemy ORM model (and the batch job tables)
is imported so that ``Base.metadata`` contains their table definitions
before tables are created.

Usage
-----
``mealbox_kernel.db.engine.create_tables()``, scripts and
``tests/conftest.py`` all call ``import_all_orm_models()`` (or
``create_all_tables()``) -- one orchestration function for every consumer.
"""


def import_all_orm_models() -> None:
    """Import every ``mealbox_modules.*.orm`` module and the job models.

    Idempotent -- repeated calls are harmless.
    """
    # fmt: off
    import mealbox_modules.platform.orm  # noqa: F401
    import mealbox_modules.subscriptions.orm  # noqa: F401
    import mealbox_modules.credits.orm  # noqa: F401
    import mealbox_modules.billing.orm  # noqa: F401
    import mealbox_modules.orders.orm  # noqa: F401
    import mealbox_modules.trials.orm  # noqa: F401
    import mealbox_batch.models.job  # noqa: F401
    # fmt: on


def create_all_tables(engine) -> None:
    """Register all ORM models, then create every table on ``engine``."""
    from mealbox_kernel.db.base import Base

    import_all_orm_models()
    Base.metadata.create_all(engine)
