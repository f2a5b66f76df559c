import os, sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Must be set before config is imported: the module-level app reads it
os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite://"
os.environ.setdefault("DISABLE_RATE_LIMITING", "1")

from types import SimpleNamespace

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from app import create_app
from config import TestConfig
from extensions import db
from models import (
    FeeCategory,
    FeeStructure,
    Parent,
    ParentStudent,
    PaymentPlan,
    Profile,
    School,
    Student,
    StudentFeeAssignment,
)
from utils.auth import sign_token


@pytest.fixture(scope="session")
def rsa_keys():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return SimpleNamespace(private=private_key, public_pem=public_pem)


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _profile(role, school=None, email=None):
    p = Profile(role=role, school_id=school.id if school else None, email=email, first_name=role, last_name="User")
    db.session.add(p)
    return p


@pytest.fixture
def world(app):
    """One verified school with a two-installment tuition plan (300 + 200)."""
    school = School(name="Green Hills", verification_status="verified")
    other_school = School(name="Blue Lake", verification_status="verified")
    db.session.add_all([school, other_school])
    db.session.flush()

    tuition = FeeCategory(school_id=school.id, name="Tuition")
    db.session.add(tuition)
    db.session.flush()

    structure = FeeStructure(
        school_id=school.id,
        academic_year_id="ay-2026",
        name="Grade 4 2026",
        fee_items=[{"category_id": tuition.id, "category_name": "Tuition", "amount": 500}],
    )
    db.session.add(structure)
    db.session.flush()

    plan = PaymentPlan(
        structure_id=structure.id,
        fee_category_id=tuition.id,
        type="installments",
        installments=[
            {"installment_number": 1, "amount": 300, "label": "Term 1", "due_date": "2026-01-15"},
            {"installment_number": 2, "amount": 200, "label": "Term 2", "due_date": "2026-05-15"},
        ],
    )
    db.session.add(plan)

    student = Student(school_id=school.id, student_number="G4-001", first_name="Amani", last_name="Kabila")
    other_student = Student(school_id=school.id, student_number="G4-002", first_name="Neema", last_name="Tshala")
    db.session.add_all([student, other_student])
    db.session.flush()

    parent_profile = _profile("parent", email="parent@example.com")
    platform_admin = _profile("platform_admin")
    school_admin = _profile("school_admin", school)
    school_staff = _profile("school_staff", school)
    other_school_admin = _profile("school_admin", other_school)
    db.session.flush()

    parent = Parent(profile_id=parent_profile.id, phone="0812345678")
    db.session.add(parent)
    db.session.flush()
    db.session.add(ParentStudent(parent_id=parent.id, student_id=student.id))

    assignment = StudentFeeAssignment(
        student_id=student.id,
        structure_id=structure.id,
        payment_plan_id=plan.id,
        academic_year_id="ay-2026",
        total_due=500,
    )
    db.session.add(assignment)
    db.session.commit()

    return SimpleNamespace(
        school=school,
        other_school=other_school,
        tuition=tuition,
        structure=structure,
        plan=plan,
        student=student,
        other_student=other_student,
        parent=parent,
        parent_profile=parent_profile,
        platform_admin=platform_admin,
        school_admin=school_admin,
        school_staff=school_staff,
        other_school_admin=other_school_admin,
        assignment=assignment,
    )


@pytest.fixture
def auth(app):
    def _headers(profile):
        return {"Authorization": f"Bearer {sign_token(profile.id)}"}

    return _headers
