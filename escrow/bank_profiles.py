import logging

from escrow.errors import NotFound, ValidationError
from escrow.models import OrganizationBankProfile, utcnow

logger = logging.getLogger(__name__)

MIN_ACCOUNT_NUMBER_DIGITS = 10


def validate_bank_details(bank_name, account_number, account_name):
    bank_name = (bank_name or "").strip()
    account_number = (account_number or "").strip()
    account_name = (account_name or "").strip()
    if not bank_name:
        raise ValidationError("Bank name is required", field="bank_name")
    if not account_number:
        raise ValidationError("Account number is required", field="account_number")
    if not account_name:
        raise ValidationError("Account name is required", field="account_name")
    if not account_number.isdigit() or len(account_number) < MIN_ACCOUNT_NUMBER_DIGITS:
        raise ValidationError(
            f"Account number must be at least {MIN_ACCOUNT_NUMBER_DIGITS} digits",
            field="account_number",
        )
    return bank_name, account_number, account_name


def get_bank_profile(db, organization_id: str) -> OrganizationBankProfile:
    profile = db.get(OrganizationBankProfile, organization_id)
    if profile is None:
        raise NotFound("Bank profile", organization_id)
    return profile


def upsert_bank_profile(db, organization_id: str, bank_name: str, account_number: str, account_name: str):
    bank_name, account_number, account_name = validate_bank_details(bank_name, account_number, account_name)
    try:
        profile = db.get(OrganizationBankProfile, organization_id)
        if profile is None:
            profile = OrganizationBankProfile(organization_id=organization_id)
            db.add(profile)
        profile.bank_name = bank_name
        profile.account_number = account_number
        profile.account_name = account_name
        profile.updated_at = utcnow()
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("bank details saved for organization %s", organization_id)
    return profile
