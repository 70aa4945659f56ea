import logging

from sqlalchemy.orm import Session

from circulation import models
from circulation import schemas
from circulation.exceptions import (
    InventoryError,
    PolicyAlreadyExistsError,
    PolicyNotConfiguredError,
)


logger = logging.getLogger(__name__)

POLICY_ROW_ID = 1


def find_policy(db: Session):
    """Return the policy row, or None when the library is not configured yet."""
    return db.get(models.Policy, POLICY_ROW_ID)


def get_policy(db: Session) -> models.Policy:
    """
    Read the policy row for an engine operation.

    The row is read through on every call and never cached in process, so an
    update is visible to the very next request.

    Raises:
        PolicyNotConfiguredError: if no policy has been created yet
    """
    policy = find_policy(db)
    if policy is None:
        raise PolicyNotConfiguredError()
    return policy


def create_policy(db: Session, data: schemas.PolicyWrite) -> models.Policy:
    if find_policy(db) is not None:
        raise PolicyAlreadyExistsError()

    policy = models.Policy(id=POLICY_ROW_ID, **data.model_dump())
    db.add(policy)
    db.commit()
    db.refresh(policy)
    logger.info("Created library policy: %s", data.model_dump())
    return policy


def update_policy(db: Session, data: schemas.PolicyWrite) -> models.Policy:
    policy = find_policy(db)
    if policy is None:
        raise PolicyNotConfiguredError("Please create the variables first.")

    for key, value in data.model_dump().items():
        setattr(policy, key, value)

    db.commit()
    db.refresh(policy)
    logger.info("Updated library policy: %s", data.model_dump())
    return policy


def remove_category(db: Session, category: str) -> models.Policy:
    """
    Drop a category label from the policy.

    Business Logic:
    - a category still used by any copy cannot be removed
    - removing an unknown label is reported rather than silently ignored
    - the last remaining category cannot be removed
    """
    policy = get_policy(db)
    label = category.strip().upper()

    if label not in policy.categories:
        raise InventoryError(f"Category {label} does not exist")

    if len(policy.categories) == 1:
        raise InventoryError("At least one category must remain")

    in_use = (
        db.query(models.Copy.id).filter(models.Copy.category == label).first()
    )
    if in_use:
        raise InventoryError("Books with this category exist.")

    # JSON columns only detect reassignment, not in-place mutation
    policy.categories = [cat for cat in policy.categories if cat != label]
    db.commit()
    db.refresh(policy)
    logger.info("Removed category %s", label)
    return policy
