from __future__ import annotations

import os
from datetime import date, datetime, timedelta

import requests
import streamlit as st

st.set_page_config(page_title="Clinic", layout="wide")

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")



# HTTP client (Bearer session token)

class ApiError(Exception):
    pass


def _headers(token: str | None) -> dict:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _check(r: requests.Response) -> dict | list:
    if r.status_code == 401:
        raise PermissionError("401 Unauthorized (session expired or revoked).")
    if r.status_code >= 400:
        try:
            body = r.json()
        except ValueError:
            r.raise_for_status()
        err = body.get("error") if isinstance(body, dict) else None
        raise ApiError(err["message"] if isinstance(err, dict) else str(body))
    return r.json()


def api_get(path: str, token: str | None = None, params: dict | None = None) -> dict | list:
    return _check(requests.get(f"{API_BASE}{path}", headers=_headers(token), params=params, timeout=10))


def api_post(path: str, payload: dict | None = None, token: str | None = None) -> dict | list:
    return _check(requests.post(f"{API_BASE}{path}", headers=_headers(token), json=payload or {}, timeout=10))


def api_login(email: str, password: str) -> dict:
    return api_post("/api/auth/login", {"email": email, "password": password})


def is_logged_in() -> bool:
    token = st.session_state.get("token")
    return bool(token) and isinstance(token, str)


def do_logout() -> None:
    token = st.session_state.pop("token", None)
    st.session_state.pop("user", None)
    st.session_state.pop("auth_error", None)
    if token:
        try:
            api_post("/api/auth/logout", token=token)
        except (requests.RequestException, ApiError, PermissionError):
            pass  # already gone server side
    st.rerun()


def require_auth() -> str | None:
    token = st.session_state.get("token")
    if not token:
        st.warning("Restricted section. Log in from the sidebar.")
        return None
    expires = st.session_state.get("expires_at")
    if expires and datetime.fromisoformat(expires) <= datetime.utcnow():
        st.error("Session expired. Log out from the sidebar and log in again.")
        return None
    return token


def session_lost(e: Exception) -> None:
    st.session_state["auth_error"] = str(e)
    st.error("Invalid session. Press Logout and log in again.")


def money(v) -> str:
    return f"₹ {float(v or 0):,.2f}"



# Sidebar login

with st.sidebar:
    st.header("Staff access")

    if not is_logged_in():
        u = st.text_input("Email", key="login_user")
        p = st.text_input("Password", type="password", key="login_pass")

        if st.button("Login", key="login_btn"):
            try:
                res = api_login(u.strip().lower(), p)
                st.session_state["token"] = res["token"]
                st.session_state["expires_at"] = res["expires_at"]
                st.session_state["user"] = res["user"]
                st.session_state.pop("auth_error", None)
                st.success("Logged in.")
                st.rerun()
            except ApiError as e:
                st.error(str(e))
            except requests.RequestException as e:
                st.error(f"API unreachable: {e}")
    else:
        user = st.session_state.get("user") or {}
        st.write(f"User: **{user.get('full_name', '-')}** ({user.get('role', '-')})")

        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])

        if st.button("Logout", key="logout_btn"):
            do_logout()

    st.divider()
    st.caption(f"API: {API_BASE}")



# UI

st.title("Clinic management (REST API + Streamlit)")

tab1, tab2, tab3, tab4 = st.tabs(["Appointments", "Billing", "Inventory", "Notifications"])



# Public data

@st.cache_data(ttl=10)
def load_doctors() -> list[dict]:
    return api_get("/api/doctors")  # public



# TAB 1 - Appointments

with tab1:
    token = st.session_state.get("token")
    role = (st.session_state.get("user") or {}).get("role")

    if not is_logged_in():
        st.subheader("Book an appointment")
        st.info("Public booking (no login): the clinic will confirm the appointment.")

        try:
            doctors = load_doctors()
        except requests.RequestException as e:
            st.error(f"API unreachable: {e}")
            st.stop()

        c1, c2 = st.columns(2)
        first = c1.text_input("First name", key="pub_first")
        last = c2.text_input("Last name", key="pub_last")
        email = c1.text_input("Email", key="pub_email")
        phone = c2.text_input("Phone", key="pub_phone")
        doctor = st.selectbox(
            "Doctor (optional)",
            options=[None, *doctors],
            format_func=lambda d: "Any doctor" if d is None else f"{d['full_name']} ({d['specialization'] or '-'})",
            key="pub_doctor",
        )
        day = c1.date_input("Date", value=date.today() + timedelta(days=1), key="pub_date")
        at = c2.time_input("Time", value=datetime.now().time().replace(second=0, microsecond=0), key="pub_time")
        reason = st.text_area("Reason (optional)", height=80, key="pub_reason")

        if st.button("Request appointment", key="pub_submit"):
            payload = {
                "first_name": first.strip(),
                "last_name": last.strip(),
                "email": email.strip(),
                "phone": phone.strip(),
                "appointment_date": day.isoformat(),
                "appointment_time": at.strftime("%H:%M"),
                "doctor_id": doctor["id"] if doctor else None,
                "reason": reason or None,
            }
            try:
                res = api_post("/api/public/appointments", payload)
                st.success(f"{res['message']} (ID: {res['appointment_id']})")
            except ApiError as e:
                st.error(str(e))

    elif role == "admin":
        st.subheader("Pending requests")
        try:
            pending = api_get("/api/admin/appointments", token=token, params={"status": "pending", "limit": 100})
            doctors = load_doctors()
            if not pending["items"]:
                st.info("No pending requests.")
            for a in pending["items"]:
                with st.expander(f"{a['scheduled_at']} | {a['patient_name']} | {a['service'] or '-'}"):
                    st.write(f"Reason: {a['reason'] or '-'}")
                    doc = st.selectbox(
                        "Assign doctor",
                        options=doctors,
                        format_func=lambda d: d["full_name"],
                        key=f"appr_doc_{a['id']}",
                    )
                    b1, b2 = st.columns(2)
                    if b1.button("Approve", key=f"appr_{a['id']}", disabled=not doctors):
                        try:
                            api_post(f"/api/admin/appointments/{a['id']}/approve", {"doctor_id": doc["id"]}, token=token)
                            st.rerun()
                        except ApiError as e:
                            st.error(str(e))
                    if b2.button("Reject", key=f"rej_{a['id']}"):
                        api_post(f"/api/admin/appointments/{a['id']}/reject", {}, token=token)
                        st.rerun()
        except PermissionError as e:
            session_lost(e)
        except (ApiError, requests.RequestException) as e:
            st.error(f"Appointments error: {e}")

    elif role == "doctor":
        st.subheader("Daily agenda")
        day = st.date_input("Day", value=date.today(), key="agenda_day")
        try:
            items = api_get("/api/doctor/agenda", token=token, params={"day": day.isoformat()})
            if not items:
                st.info("No appointments on this day.")
            for a in items:
                st.write(
                    f"- **{a['start']} - {a['end']}** | {a['patient']} | "
                    f"Status: {a['status']} | Reason: {a['reason'] or '-'}"
                )
        except PermissionError as e:
            session_lost(e)
        except (ApiError, requests.RequestException) as e:
            st.error(f"Agenda error: {e}")

    else:
        st.info("Appointments are managed by admins and doctors.")



# TAB 2 - Billing (PROTECTED)

with tab2:
    st.subheader("Billing")

    token = require_auth()
    if token:
        try:
            stats = api_get("/api/billing/reports/dashboard", token=token)
            c1, c2, c3, c4 = st.columns(4)
            c1.metric("Collected today", money(stats["today_revenue"]))
            c2.metric("Collected this month", money(stats["month_revenue"]))
            c3.metric("Outstanding", money(stats["total_outstanding"]))
            c4.metric("Pending appointments", stats["pending_appointments"])

            with st.expander("Quick bill"):
                patients = api_get("/api/admin/patients", token=token)
                patient = st.selectbox(
                    "Patient",
                    options=patients,
                    format_func=lambda p: f"{p['full_name']} ({p['email']})",
                    key="qb_patient",
                )
                desc = st.text_input("Service", value="Consultation", key="qb_desc")
                price = st.number_input("Price", min_value=0.0, step=50.0, key="qb_price")
                method = st.selectbox("Payment method", ["cash", "card", "upi", "bank_transfer"], key="qb_method")
                if st.button("Create and collect", key="qb_submit", disabled=not patients):
                    res = api_post(
                        "/api/billing/quick-bill",
                        {
                            "patient_id": patient["id"],
                            "items": [{"item_type": "service", "description": desc, "unit_price": price}],
                            "payment_method": method,
                        },
                        token=token,
                    )
                    st.success(f"Invoice {res['invoice']['invoice_number']} paid ({money(res['invoice']['total_amount'])}).")

            st.divider()
            status = st.selectbox("Status", ["", "draft", "pending", "partial", "paid", "cancelled"], key="inv_status")
            invoices = api_get("/api/billing/invoices", token=token, params={"status": status or None, "limit": 50})
            for inv in invoices["items"]:
                with st.expander(
                    f"{inv['invoice_number']} | {inv['invoice_date']} | {inv['patient_name']} | "
                    f"{inv['status']} | {money(inv['total_amount'])}"
                ):
                    st.write(f"Paid {money(inv['amount_paid'])} | Due **{money(inv['amount_due'])}**")
                    if inv["status"] in ("pending", "partial") and float(inv["amount_due"]) > 0:
                        amount = st.number_input(
                            "Amount", min_value=0.0, value=float(inv["amount_due"]), key=f"pay_amt_{inv['id']}"
                        )
                        if st.button("Record cash payment", key=f"pay_{inv['id']}"):
                            api_post(
                                f"/api/billing/invoices/{inv['id']}/payments",
                                {"amount": amount, "method": "cash"},
                                token=token,
                            )
                            st.rerun()
        except PermissionError as e:
            session_lost(e)
        except (ApiError, requests.RequestException) as e:
            st.error(f"Billing error: {e}")



# TAB 3 - Inventory (PROTECTED)

with tab3:
    st.subheader("Inventory")

    token = require_auth()
    if token:
        try:
            counts = api_get("/api/inventory/alerts/counts", token=token)
            st.write(
                f"Open alerts: **{counts['total']}** (low stock {counts['low_stock']}, out of stock "
                f"{counts['out_of_stock']}, expiring {counts['expiring_soon']}, expired {counts['expired']})"
            )
            if st.button("Run expiry check", key="inv_expiry"):
                res = api_post("/api/inventory/check-expiry", token=token)
                st.success(f"New alerts: {res['expired_alerts']} expired, {res['expiring_alerts']} expiring.")

            for a in api_get("/api/inventory/alerts", token=token, params={"limit": 50}):
                c1, c2 = st.columns([5, 1])
                c1.write(f"[{a['severity']}] {a['message']}")
                if c2.button("Resolve", key=f"alert_{a['id']}"):
                    api_post(f"/api/inventory/alerts/{a['id']}/resolve", token=token)
                    st.rerun()

            st.divider()
            search = st.text_input("Search items", key="inv_search")
            low = st.checkbox("Low stock only", key="inv_low")
            items = api_get("/api/inventory/items", token=token, params={"search": search or None, "low_stock": low})
            for i in items["items"]:
                flag = " ⚠️" if i["is_low_stock"] else ""
                st.write(f"- **{i['name']}** ({i['sku']}) | stock {i['current_stock']}{flag} | {money(i['selling_price'])}")
        except PermissionError as e:
            session_lost(e)
        except (ApiError, requests.RequestException) as e:
            st.error(f"Inventory error: {e}")



# TAB 4 - Notifications (PROTECTED)

with tab4:
    st.subheader("Notifications")

    token = require_auth()
    if token:
        try:
            unread = api_get("/api/notifications/unread-count", token=token)["count"]
            st.write(f"Unread: **{unread}**")
            if unread and st.button("Mark all as read", key="notif_all"):
                api_post("/api/notifications/read-all", token=token)
                st.rerun()

            items = api_get("/api/notifications", token=token, params={"limit": 100})
            if not items:
                st.info("No notifications.")
            for n in items:
                mark = "" if n["is_read"] else "🔵 "
                st.write(f"{mark}[{n['created_at'][:16]}] **{n['title']}** - {n['message']}")
        except PermissionError as e:
            session_lost(e)
        except (ApiError, requests.RequestException) as e:
            st.error(f"Notifications error: {e}")
