# store/models.py
"""
Supabase does not require ORM model classes.
Tables created in the Supabase dashboard (fields are optional; readers
fall back across legacy names, see portal/records.py):

Table: users
- id (uuid, PK, same as auth user id)
- email, phone, first_name, last_name, full_name, name
- role (text: driver | partner | partner_staff | admin ...)
- company_name, partner_id, bank_details (jsonb)

Table: partners
- id (uuid, PK), user_id (FK → users.id)
- company_name, contact_name, email, phone, location
- status (pending | active | suspended), fleet_size, rating, total_earnings

Table: partner_staff
- id, user_id, partner_id, name, email
- permissions (jsonb of can* flags), is_active

Table: vehicles
- id, partner_id, make, model, year, registration_number, color
- status (available | booked | maintenance), current_booking_id
- daily_rate, weekly_rate, monthly_rate, price_per_day, price_per_week
- documents (jsonb keyed by mot | private_hire_license | insurance | logbook | roadTax)

Table: bookings
- id (text, PK), driver_id, partner_id, vehicle_id, current_vehicle_id, car_id
- start_date, end_date, weekly_rate, total_amount, deposit_amount
- status, payment_status, payment_method
- car / driver / partner (jsonb snapshots), car_name, car_plate, car_image
- history timestamps per action, issues (jsonb[]), vehicle_history (jsonb[])

Table: payment_instructions
- id, booking_id, driver_id, partner_id, vehicle_reg
- amount, type (deposit | weekly_rent | refund | final_payment)
- method (bank_transfer | direct_debit | deposit | weekly), frequency
- status, next_due_date, last_sent_at, refunded_amount

Table: transactions
- id, booking_id, partner_id, driver_id, instruction_id
- type (income | expense | payment_sent), category, amount, net_amount
- fees (jsonb), status, source, payment_method
- booking_details / driver_details / partner_details / vehicle_details (jsonb)

Table: payments
- id, booking_id, driver_id, partner_id, amount, currency, status, type

Tables: booking_history, partner_actions, notifications, documents,
admin_activity_logs, scheduled_tasks, drivers, partner_drivers
"""

USERS = "users"
PARTNERS = "partners"
PARTNER_STAFF = "partner_staff"
DRIVERS = "drivers"
PARTNER_DRIVERS = "partner_drivers"
VEHICLES = "vehicles"
BOOKINGS = "bookings"
PAYMENTS = "payments"
PAYMENT_INSTRUCTIONS = "payment_instructions"
TRANSACTIONS = "transactions"
BOOKING_HISTORY = "booking_history"
PARTNER_ACTIONS = "partner_actions"
NOTIFICATIONS = "notifications"
DOCUMENTS = "documents"
ADMIN_ACTIVITY_LOGS = "admin_activity_logs"
SCHEDULED_TASKS = "scheduled_tasks"


# Vehicle statuses
VEHICLE_AVAILABLE = "available"
VEHICLE_BOOKED = "booked"

# Payment instruction statuses
INSTRUCTION_PENDING = "pending"
INSTRUCTION_AUTO = "auto"
INSTRUCTION_SENT = "sent"
INSTRUCTION_DEPOSIT_RECEIVED = "deposit_received"
INSTRUCTION_DEPOSIT_REFUNDED = "deposit_refunded"
INSTRUCTION_REFUND_PENDING = "deposit_refund_pending"
INSTRUCTION_REFUND_REJECTED = "refund_rejected"

# Instruction statuses that count as money actually received
RECEIVED_STATUSES = ("completed", "received")

ACTOR_TYPES = ("driver", "partner", "admin")
