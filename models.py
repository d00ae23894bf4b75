import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    func,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

Base = declarative_base()


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Gender(enum.Enum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"


class LoanStatus(enum.Enum):
    LOANED = "Loaned"
    RETURNED = "Returned"
    OVERDUE = "Overdue"


class FineStatus(enum.Enum):
    UNPAID = "Unpaid"
    PAID = "Paid"
    WAIVED = "Waived"


class ReservationStatus(enum.Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"


class StaffRole(enum.Enum):
    LIBRARIAN = "Librarian"
    ASSISTANT = "Assistant"
    MANAGER = "Manager"


class RegistrationStatus(enum.Enum):
    REGISTERED = "Registered"
    ATTENDED = "Attended"
    CANCELLED = "Cancelled"


# Allowed moves per status; anything else is an illegal transition.
LOAN_TRANSITIONS = {
    LoanStatus.LOANED: {LoanStatus.OVERDUE, LoanStatus.RETURNED},
    LoanStatus.OVERDUE: {LoanStatus.RETURNED},
    LoanStatus.RETURNED: set(),
}

FINE_TRANSITIONS = {
    FineStatus.UNPAID: {FineStatus.PAID, FineStatus.WAIVED},
    FineStatus.PAID: set(),
    FineStatus.WAIVED: set(),
}

RESERVATION_TRANSITIONS = {
    ReservationStatus.PENDING: {ReservationStatus.ACTIVE, ReservationStatus.CANCELLED},
    ReservationStatus.ACTIVE: {ReservationStatus.COMPLETED, ReservationStatus.CANCELLED},
    ReservationStatus.CANCELLED: set(),
    ReservationStatus.COMPLETED: set(),
}


class Member(Base):
    __tablename__ = "Members"
    id = Column("MemberID", Integer, primary_key=True, autoincrement=True)
    first_name = Column("FirstName", String(50), nullable=False)
    last_name = Column("LastName", String(50), nullable=False)
    date_of_birth = Column("DateOfBirth", Date)
    gender = Column("Gender", Enum(Gender, name="member_gender", values_callable=_values), nullable=False)
    email = Column("Email", String(100), unique=True, nullable=False)
    phone_number = Column("PhoneNumber", String(20), unique=True)
    address = Column("Address", String(255))
    join_date = Column("JoinDate", Date, nullable=False)

    loans = relationship("Loan", back_populates="member")
    reservations = relationship("Reservation", back_populates="member")
    registrations = relationship("EventRegistration", back_populates="member")
    reviews = relationship("Review", back_populates="member")


class Author(Base):
    __tablename__ = "Authors"
    id = Column("AuthorID", Integer, primary_key=True, autoincrement=True)
    first_name = Column("FirstName", String(50), nullable=False)
    last_name = Column("LastName", String(50), nullable=False)
    biography = Column("Biography", Text)

    books = relationship("Book", back_populates="author_ref")


class Book(Base):
    __tablename__ = "Books"
    id = Column("BookID", Integer, primary_key=True, autoincrement=True)
    title = Column("Title", String(255), nullable=False)
    author = Column("Author", String(100), nullable=False)
    isbn = Column("ISBN", String(20), unique=True, nullable=False)
    genre = Column("Genre", String(50))
    publication_year = Column("PublicationYear", Integer)
    copies_available = Column("CopiesAvailable", Integer, nullable=False)
    total_copies = Column("TotalCopies", Integer, nullable=False)
    publisher = Column("Publisher", String(100))
    author_id = Column("AuthorID", Integer, ForeignKey("Authors.AuthorID"))

    author_ref = relationship("Author", back_populates="books")
    loans = relationship("Loan", back_populates="book")
    reservations = relationship("Reservation", back_populates="book")
    reviews = relationship("Review", back_populates="book")


class Loan(Base):
    __tablename__ = "BookLoans"
    id = Column("LoanID", Integer, primary_key=True, autoincrement=True)
    member_id = Column("MemberID", Integer, ForeignKey("Members.MemberID"))
    book_id = Column("BookID", Integer, ForeignKey("Books.BookID"))
    loan_date = Column("LoanDate", Date, nullable=False)
    return_date = Column("ReturnDate", Date)
    due_date = Column("DueDate", Date, nullable=False)
    status = Column(
        "Status",
        Enum(LoanStatus, name="loan_status", values_callable=_values),
        nullable=False,
        default=LoanStatus.LOANED,
        server_default=LoanStatus.LOANED.value,
    )

    member = relationship("Member", back_populates="loans")
    book = relationship("Book", back_populates="loans")
    fines = relationship("Fine", back_populates="loan")


class Fine(Base):
    __tablename__ = "Fines"
    id = Column("FineID", Integer, primary_key=True, autoincrement=True)
    loan_id = Column("LoanID", Integer, ForeignKey("BookLoans.LoanID"))
    amount = Column("FineAmount", Numeric(10, 2, asdecimal=True), nullable=False)
    payment_date = Column("PaymentDate", Date)
    status = Column(
        "Status",
        Enum(FineStatus, name="fine_status", values_callable=_values),
        nullable=False,
        default=FineStatus.UNPAID,
        server_default=FineStatus.UNPAID.value,
    )

    loan = relationship("Loan", back_populates="fines")


class Reservation(Base):
    __tablename__ = "BookReservations"
    id = Column("ReservationID", Integer, primary_key=True, autoincrement=True)
    member_id = Column("MemberID", Integer, ForeignKey("Members.MemberID"))
    book_id = Column("BookID", Integer, ForeignKey("Books.BookID"))
    # Holds the queue date while Pending and the activation date once Active.
    reservation_date = Column("ReservationDate", Date, nullable=False)
    status = Column(
        "Status",
        Enum(ReservationStatus, name="reservation_status", values_callable=_values),
        nullable=False,
        default=ReservationStatus.PENDING,
        server_default=ReservationStatus.PENDING.value,
    )

    member = relationship("Member", back_populates="reservations")
    book = relationship("Book", back_populates="reservations")


class Staff(Base):
    __tablename__ = "LibraryStaff"
    id = Column("StaffID", Integer, primary_key=True, autoincrement=True)
    first_name = Column("FirstName", String(50), nullable=False)
    last_name = Column("LastName", String(50), nullable=False)
    email = Column("Email", String(100), unique=True, nullable=False)
    phone_number = Column("PhoneNumber", String(20), unique=True)
    job_title = Column("JobTitle", String(100), nullable=False)
    hire_date = Column("HireDate", Date, nullable=False)
    role = Column("Role", Enum(StaffRole, name="staff_role", values_callable=_values), nullable=False)


class Event(Base):
    __tablename__ = "Events"
    id = Column("EventID", Integer, primary_key=True, autoincrement=True)
    title = Column("Title", String(255), nullable=False)
    description = Column("Description", Text)
    event_date = Column("EventDate", Date, nullable=False)
    start_time = Column("StartTime", Time)
    end_time = Column("EndTime", Time)
    location = Column("Location", String(255))
    organizer = Column("Organizer", String(100))
    capacity = Column("Capacity", Integer)
    registration_deadline = Column("RegistrationDeadline", Date)

    registrations = relationship("EventRegistration", back_populates="event")


class EventRegistration(Base):
    __tablename__ = "EventRegistrations"
    id = Column("RegistrationID", Integer, primary_key=True, autoincrement=True)
    event_id = Column("EventID", Integer, ForeignKey("Events.EventID"))
    member_id = Column("MemberID", Integer, ForeignKey("Members.MemberID"))
    registration_date = Column("RegistrationDate", Date, nullable=False)
    status = Column(
        "Status",
        Enum(RegistrationStatus, name="registration_status", values_callable=_values),
        nullable=False,
        default=RegistrationStatus.REGISTERED,
        server_default=RegistrationStatus.REGISTERED.value,
    )

    event = relationship("Event", back_populates="registrations")
    member = relationship("Member", back_populates="registrations")


class Review(Base):
    __tablename__ = "BookReviews"
    __table_args__ = (CheckConstraint("Rating >= 1 AND Rating <= 5", name="ck_review_rating"),)
    id = Column("ReviewID", Integer, primary_key=True, autoincrement=True)
    book_id = Column("BookID", Integer, ForeignKey("Books.BookID"))
    member_id = Column("MemberID", Integer, ForeignKey("Members.MemberID"))
    rating = Column("Rating", Integer, nullable=False)
    review_text = Column("ReviewText", Text)
    review_date = Column("ReviewDate", DateTime, server_default=func.current_timestamp())

    book = relationship("Book", back_populates="reviews")
    member = relationship("Member", back_populates="reviews")


class Setting(Base):
    __tablename__ = "LibrarySettings"
    id = Column("SettingID", Integer, primary_key=True, autoincrement=True)
    name = Column("SettingName", String(50), unique=True, nullable=False)
    value = Column("SettingValue", String(255), nullable=False)
    description = Column("Description", Text)


DEFAULT_SETTINGS = [
    ("DefaultLoanDuration", "21", "Default number of days for book loans"),
    ("FinePerDay", "0.50", "Amount of fine per day for overdue books"),
    ("MaxBookLoans", "5", "Maximum number of books a member can have loaned out at one time"),
    ("ReservationExpiryDays", "3", "Number of days a reservation is valid after the book becomes available"),
]


def init_db(engine):
    """Create missing tables and insert any default setting not yet present.

    Values an administrator already changed are left alone.
    """
    Base.metadata.create_all(engine, checkfirst=True)
    session = sessionmaker(bind=engine)()
    try:
        existing = {name for (name,) in session.query(Setting.name).all()}
        added = 0
        for name, value, description in DEFAULT_SETTINGS:
            if name not in existing:
                session.add(Setting(name=name, value=value, description=description))
                added += 1
        session.commit()
        return added
    finally:
        session.close()
