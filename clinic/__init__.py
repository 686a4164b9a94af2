"""
Clinic management backend.

Structure:
- config.py              : settings loaded from environment / .env
- logger.py              : logging setup (get_logger)
- db.py                  : SQLAlchemy engine and sessions
- exceptions.py          : domain errors and their HTTP mapping
- auth_models.py         : users, profiles, sessions, OTP codes
- models.py              : appointments, medical records, prescriptions, notifications
- inventory_models.py    : pharmacy inventory (items, batches, movements, POs, alerts)
- billing_models.py      : settings, invoices, payments, credit notes, ledger, audit, cases
- gst.py                 : GST arithmetic (pure functions)
- auth_security.py       : password hashing, tokens, OTP codes, password policy
- auth_service.py        : login, sessions, OTP login, user management
- rate_limit.py          : in-memory sliding window limiter
- deps.py                : FastAPI dependencies (session token, role guards)
- notifications.py       : in-app notifications and the delivery outbox
- services.py            : patients, appointments, consultations
- pharmacy.py            : prescription processing and dispensing
- inventory_service.py   : stock, batches, alerts, purchase orders
- stock_billing.py       : stock deduction / restore driven by invoices
- billing_service.py     : invoices, payments, refunds, quick and pharmacy bills
- prescription_billing.py: invoices generated from prescriptions
- credit_notes.py, ledger.py, audit.py, treatment_cases.py, reports.py
- api_main.py            : FastAPI app, auth, public booking, users, notifications
- api_appointments.py    : admin appointment workflow and doctor consultations
- api_patient.py, api_pharmacy.py, api_inventory.py, api_billing.py : role routers
- seed.py                : initial data (settings, categories, admin)
- cli.py                 : command line tools
"""
