from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_engine.errors import ConflictError, NotFoundError
from attendance_engine.models import Department, Employee
from attendance_engine.schemas import DepartmentUpsert, EmployeeUpsert

logger = logging.getLogger("attendance_engine.directory")


def upsert_department(db: Session, department_id: int, payload: DepartmentUpsert) -> Department:
    """Mirror a department from the employee master service under its own id."""
    name = payload.name.strip()
    clash = db.scalar(select(Department).where(Department.name == name, Department.id != department_id))
    if clash is not None:
        raise ConflictError("DEPARTMENT_NAME_TAKEN", "Another department already uses this name.")

    department = db.get(Department, department_id)
    created = department is None
    if department is None:
        department = Department(id=department_id, name=name)
        db.add(department)
    else:
        department.name = name
    db.commit()
    db.refresh(department)
    logger.info("department_synced", extra={"department_id": department.id, "was_created": created})
    return department


def upsert_employee(db: Session, employee_id: int, payload: EmployeeUpsert) -> Employee:
    """Mirror an employee snapshot. Attendance history is kept when one is deactivated."""
    if payload.department_id is not None and db.get(Department, payload.department_id) is None:
        raise NotFoundError("DEPARTMENT_NOT_FOUND", "Department not found.")

    employee = db.get(Employee, employee_id)
    created = employee is None
    if employee is None:
        employee = Employee(id=employee_id)
        db.add(employee)
    employee.full_name = payload.full_name.strip()
    employee.department_id = payload.department_id
    employee.is_active = payload.is_active
    db.commit()
    db.refresh(employee)
    logger.info(
        "employee_synced",
        extra={
            "employee_id": employee.id,
            "department_id": employee.department_id,
            "is_active": employee.is_active,
            "was_created": created,
        },
    )
    return employee
