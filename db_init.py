import json
import uuid

from werkzeug.security import generate_password_hash

from config import Config
from db_mysql import get_conn

DOCUMENT_TYPES = ("book", "these", "memoire", "rapport_stage")

_TABLES = [
    # ---- Patrons (local accounts + AD mirrors used for circulation) ----
    """
    CREATE TABLE IF NOT EXISTS users (
        id VARCHAR(64) PRIMARY KEY,
        email VARCHAR(255) UNIQUE NOT NULL,
        full_name VARCHAR(255) NOT NULL,
        barcode VARCHAR(50) UNIQUE,
        matricule VARCHAR(50),
        phone VARCHAR(30),
        address TEXT,
        role ENUM('admin','bibliothecaire','enregistrement','circulation','etudiant','user')
             NOT NULL DEFAULT 'etudiant',
        password_hash VARCHAR(255),
        is_active TINYINT(1) NOT NULL DEFAULT 1,
        account_status ENUM('active','suspended','inactive') NOT NULL DEFAULT 'active',
        max_loans INT NOT NULL DEFAULT 3,
        max_reservations INT NOT NULL DEFAULT 3,
        last_login DATETIME NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Books ----
    """
    CREATE TABLE IF NOT EXISTS books (
        id VARCHAR(64) PRIMARY KEY,
        mfn VARCHAR(50) UNIQUE,
        isbn VARCHAR(20),
        title VARCHAR(500) NOT NULL,
        subtitle VARCHAR(500),
        main_author VARCHAR(255) NOT NULL,
        secondary_author VARCHAR(255),
        edition VARCHAR(100),
        publication_city VARCHAR(100),
        publisher VARCHAR(255),
        publication_year INT,
        domain VARCHAR(255),
        collection VARCHAR(255),
        summary TEXT,
        keywords JSON,
        dewey_classification VARCHAR(50),
        language VARCHAR(10) DEFAULT 'fr',
        format VARCHAR(20) DEFAULT 'print',
        physical_location VARCHAR(255),
        barcode VARCHAR(50),
        total_copies INT NOT NULL DEFAULT 1,
        available_copies INT NOT NULL DEFAULT 1,
        status VARCHAR(20) DEFAULT 'available',
        document_path VARCHAR(500),
        file_type VARCHAR(20),
        document_size BIGINT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Theses ----
    """
    CREATE TABLE IF NOT EXISTS theses (
        id VARCHAR(64) PRIMARY KEY,
        title VARCHAR(500) NOT NULL,
        main_author VARCHAR(255) NOT NULL,
        student_id VARCHAR(50),
        director VARCHAR(255),
        co_director VARCHAR(255),
        target_degree VARCHAR(50),
        specialty VARCHAR(255),
        defense_year INT,
        defense_date DATE,
        university VARCHAR(255),
        faculty VARCHAR(255),
        department VARCHAR(255),
        summary TEXT,
        keywords JSON,
        language VARCHAR(10) DEFAULT 'fr',
        format VARCHAR(20) DEFAULT 'print',
        dewey_classification VARCHAR(50),
        document_path VARCHAR(500),
        file_type VARCHAR(20),
        document_size BIGINT,
        status VARCHAR(20) DEFAULT 'available',
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Memoirs ----
    """
    CREATE TABLE IF NOT EXISTS memoires (
        id VARCHAR(64) PRIMARY KEY,
        title VARCHAR(500) NOT NULL,
        main_author VARCHAR(255) NOT NULL,
        student_id VARCHAR(50),
        supervisor VARCHAR(255),
        co_supervisor VARCHAR(255),
        degree_level VARCHAR(50),
        field_of_study VARCHAR(255),
        specialty VARCHAR(255),
        defense_year INT,
        defense_date DATE,
        university VARCHAR(255),
        faculty VARCHAR(255),
        department VARCHAR(255),
        summary TEXT,
        keywords JSON,
        language VARCHAR(10) DEFAULT 'fr',
        format VARCHAR(20) DEFAULT 'print',
        dewey_classification VARCHAR(50),
        document_path VARCHAR(500),
        file_type VARCHAR(20),
        document_size BIGINT,
        status VARCHAR(20) DEFAULT 'available',
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Internship reports ----
    """
    CREATE TABLE IF NOT EXISTS stage_reports (
        id VARCHAR(64) PRIMARY KEY,
        title VARCHAR(500) NOT NULL,
        student_name VARCHAR(255) NOT NULL,
        student_id VARCHAR(50),
        supervisor VARCHAR(255),
        company_name VARCHAR(255),
        stage_type VARCHAR(50),
        degree_level VARCHAR(50),
        field_of_study VARCHAR(255),
        specialty VARCHAR(255),
        academic_year VARCHAR(20),
        defense_year INT,
        defense_date DATE,
        university VARCHAR(255),
        faculty VARCHAR(255),
        department VARCHAR(255),
        summary TEXT,
        keywords JSON,
        language VARCHAR(10) DEFAULT 'fr',
        format VARCHAR(20) DEFAULT 'print',
        dewey_classification VARCHAR(50),
        document_path VARCHAR(500),
        file_type VARCHAR(20),
        document_size BIGINT,
        status VARCHAR(20) DEFAULT 'available',
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Loans ----
    """
    CREATE TABLE IF NOT EXISTS loans (
        id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        book_id VARCHAR(64) NULL,
        academic_document_id VARCHAR(64) NULL,
        document_type ENUM('book','these','memoire','rapport_stage') NOT NULL DEFAULT 'book',
        loan_date DATE NOT NULL,
        due_date DATE NOT NULL,
        return_date DATE NULL,
        status ENUM('active','overdue','returned','lost') NOT NULL DEFAULT 'active',
        renewal_count INT NOT NULL DEFAULT 0,
        notes TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
        INDEX idx_loans_user (user_id),
        INDEX idx_loans_status_due (status, due_date),
        INDEX idx_loans_book (book_id),
        INDEX idx_loans_academic (academic_document_id)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Reservations ----
    """
    CREATE TABLE IF NOT EXISTS reservations (
        id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        book_id VARCHAR(64) NULL,
        academic_document_id VARCHAR(64) NULL,
        document_type ENUM('book','these','memoire','rapport_stage') NOT NULL DEFAULT 'book',
        reservation_date DATE NOT NULL,
        expiry_date DATE NOT NULL,
        status ENUM('active','fulfilled','expired','cancelled') NOT NULL DEFAULT 'active',
        priority_order INT NOT NULL DEFAULT 1,
        notification_sent TINYINT(1) NOT NULL DEFAULT 0,
        notes TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
        INDEX idx_res_status_expiry (status, expiry_date),
        INDEX idx_res_book (book_id),
        INDEX idx_res_academic (academic_document_id)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Penalties ----
    """
    CREATE TABLE IF NOT EXISTS penalties (
        id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        loan_id VARCHAR(64) NULL,
        penalty_type ENUM('late_return','damage','loss','other') NOT NULL DEFAULT 'late_return',
        amount_fcfa DECIMAL(10,2) NOT NULL DEFAULT 0,
        daily_rate DECIMAL(10,2) NULL,
        days_overdue INT NULL,
        description TEXT,
        status ENUM('unpaid','paid','waived','partial') NOT NULL DEFAULT 'unpaid',
        penalty_date DATE NOT NULL,
        due_date DATE NULL,
        payment_date DATE NULL,
        payment_method ENUM('cash','bank_transfer','mobile_money','check') NULL,
        receipt_number VARCHAR(100) NULL,
        waived_by VARCHAR(64) NULL,
        waived_reason TEXT NULL,
        processed_by VARCHAR(64) NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
        INDEX idx_pen_user_status (user_id, status),
        INDEX idx_pen_loan (loan_id)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS penalty_settings (
        id INT AUTO_INCREMENT PRIMARY KEY,
        document_type ENUM('book','these','memoire','rapport_stage') NOT NULL UNIQUE,
        daily_rate DECIMAL(10,2) NOT NULL,
        max_penalty DECIMAL(10,2) NOT NULL,
        grace_period_days INT NOT NULL DEFAULT 0,
        is_active TINYINT(1) NOT NULL DEFAULT 1,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Reading room (on-site consultation) ----
    """
    CREATE TABLE IF NOT EXISTS reading_room_consultations (
        id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        book_id VARCHAR(64) NULL,
        academic_document_id VARCHAR(64) NULL,
        document_type ENUM('book','these','memoire','rapport_stage') NOT NULL DEFAULT 'book',
        consultation_date DATE NOT NULL,
        start_time DATETIME NOT NULL,
        end_time DATETIME NULL,
        status ENUM('active','completed') NOT NULL DEFAULT 'active',
        notes TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Accounts mirrored from Active Directory ----
    """
    CREATE TABLE IF NOT EXISTS synced_users (
        id VARCHAR(100) PRIMARY KEY,
        username VARCHAR(100) UNIQUE NOT NULL,
        email VARCHAR(255),
        display_name VARCHAR(255),
        first_name VARCHAR(100),
        last_name VARCHAR(100),
        department VARCHAR(255),
        title VARCHAR(255),
        phone VARCHAR(50),
        office VARCHAR(255),
        company VARCHAR(255),
        manager VARCHAR(500),
        role VARCHAR(50) NOT NULL DEFAULT 'etudiant',
        permissions JSON,
        groups_json JSON,
        distinguished_name VARCHAR(500),
        is_active TINYINT(1) NOT NULL DEFAULT 1,
        manual_role_override TINYINT(1) NOT NULL DEFAULT 0,
        last_sync DATETIME,
        last_login DATETIME,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Key/value settings ----
    """
    CREATE TABLE IF NOT EXISTS system_settings (
        setting_key VARCHAR(100) PRIMARY KEY,
        setting_value TEXT,
        setting_type ENUM('string','number','boolean','json') NOT NULL DEFAULT 'string',
        category VARCHAR(50) NOT NULL DEFAULT 'general',
        description VARCHAR(255),
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # ---- Business audit trail ----
    """
    CREATE TABLE IF NOT EXISTS system_logs (
        id BIGINT AUTO_INCREMENT PRIMARY KEY,
        action VARCHAR(100) NOT NULL,
        table_name VARCHAR(100),
        record_id VARCHAR(64),
        user_id VARCHAR(100),
        message TEXT,
        level ENUM('debug','info','warning','error') NOT NULL DEFAULT 'info',
        context JSON,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        INDEX idx_logs_created (created_at),
        INDEX idx_logs_action (action)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS email_templates (
        template_key VARCHAR(100) PRIMARY KEY,
        subject VARCHAR(255) NOT NULL,
        html TEXT NOT NULL,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
]

DEFAULT_PENALTY_SETTINGS = [
    # (document_type, daily_rate, max_penalty, grace_period_days)
    ("book", 100, 5000, 1),
    ("these", 200, 10000, 1),
    ("memoire", 150, 7500, 1),
    ("rapport_stage", 100, 5000, 1),
]

DEFAULT_SETTINGS = [
    # (key, value, type, category, description)
    ("library_name", Config.LIBRARY_NAME, "string", "general", "Nom de la bibliothèque"),
    ("default_loan_days", str(Config.DEFAULT_LOAN_DAYS), "number", "loans", "Durée de prêt par défaut"),
    ("max_renewals", "1", "number", "loans", "Nombre maximal de renouvellements"),
    ("reservation_expiry_days", str(Config.RESERVATION_EXPIRY_DAYS), "number", "reservations",
     "Validité d'une réservation (jours)"),
    ("email_reminder_days_before", str(Config.REMINDER_DAYS_BEFORE), "number", "notifications",
     "Rappel avant échéance (jours)"),
    ("email_notifications_enabled", "true", "boolean", "notifications", "Envoi des e-mails"),
    ("circulation_job_hour", str(Config.CIRCULATION_JOB_HOUR), "number", "scheduler",
     "Heure du traitement quotidien"),
    ("circulation_job_minute", str(Config.CIRCULATION_JOB_MINUTE), "number", "scheduler",
     "Minute du traitement quotidien"),
    ("working_days", json.dumps(["mon", "tue", "wed", "thu", "fri"]), "json", "general",
     "Jours ouvrables"),
]

DEFAULT_EMAIL_TEMPLATES = {
    "loan_confirmation": (
        "Confirmation de prêt - {{ title }}",
        "<p>Bonjour {{ full_name }},</p>"
        "<p>Votre prêt du document <b>{{ title }}</b> est enregistré.<br>"
        "Date de retour prévue : <b>{{ due_date }}</b>.</p>"
        "<p>{{ library_name }}</p>",
    ),
    "due_reminder": (
        "Rappel : retour prévu le {{ due_date }}",
        "<p>Bonjour {{ full_name }},</p>"
        "<p>Le document <b>{{ title }}</b> doit être rendu dans {{ days_left }} jour(s), "
        "le {{ due_date }}.</p><p>{{ library_name }}</p>",
    ),
    "overdue_notice": (
        "Retard : {{ title }}",
        "<p>Bonjour {{ full_name }},</p>"
        "<p>Le document <b>{{ title }}</b> est en retard de {{ days_overdue }} jour(s). "
        "Merci de le rapporter au plus vite.</p><p>{{ library_name }}</p>",
    ),
    "penalty_created": (
        "Pénalité de retard : {{ amount }}",
        "<p>Bonjour {{ full_name }},</p>"
        "<p>Une pénalité de <b>{{ amount }}</b> a été enregistrée : {{ description }}.<br>"
        "À régler avant le {{ due_date }}.</p><p>{{ library_name }}</p>",
    ),
    "reservation_confirmation": (
        "Réservation enregistrée - {{ title }}",
        "<p>Bonjour {{ full_name }},</p>"
        "<p>Votre réservation du document <b>{{ title }}</b> est enregistrée "
        "(position {{ priority }} dans la file).<br>Elle expire le {{ expiry_date }}.</p>"
        "<p>{{ library_name }}</p>",
    ),
    "document_available": (
        "Document disponible - {{ title }}",
        "<p>Bonjour {{ full_name }},</p>"
        "<p>Le document <b>{{ title }}</b> que vous avez réservé est disponible. "
        "Votre réservation expire le {{ expiry_date }}.</p><p>{{ library_name }}</p>",
    ),
}


def init_schema():
    conn = get_conn()
    cur = conn.cursor()

    for ddl in _TABLES:
        cur.execute(ddl)

    # 🔄 MIGRATION: columns added after the first release
    cur.execute(
        "SELECT COLUMN_NAME FROM information_schema.COLUMNS "
        "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = 'loans'"
    )
    loan_cols = {row[0] for row in cur.fetchall()}
    if "renewal_count" not in loan_cols:
        cur.execute("ALTER TABLE loans ADD COLUMN renewal_count INT NOT NULL DEFAULT 0")
        print("🔄 Migrated loans table, added column: renewal_count")

    # ---- Penalty settings ----
    for doc_type, rate, max_penalty, grace in DEFAULT_PENALTY_SETTINGS:
        cur.execute(
            """
            INSERT IGNORE INTO penalty_settings (document_type, daily_rate, max_penalty, grace_period_days)
            VALUES (%s, %s, %s, %s)
            """,
            (doc_type, rate, max_penalty, grace),
        )

    # ---- System settings ----
    for key, value, kind, category, description in DEFAULT_SETTINGS:
        cur.execute(
            """
            INSERT IGNORE INTO system_settings (setting_key, setting_value, setting_type, category, description)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (key, value, kind, category, description),
        )

    # ---- Email templates ----
    for key, (subject, html) in DEFAULT_EMAIL_TEMPLATES.items():
        cur.execute(
            "INSERT IGNORE INTO email_templates (template_key, subject, html) VALUES (%s, %s, %s)",
            (key, subject, html),
        )

    # ✅ Create a local administrator if none exists (AD may be unreachable)
    cur.execute("SELECT COUNT(*) FROM users WHERE role = 'admin'")
    if cur.fetchone()[0] == 0:
        cur.execute(
            """
            INSERT INTO users (id, email, full_name, role, password_hash, max_loans, max_reservations)
            VALUES (%s, %s, %s, 'admin', %s, 10, 10)
            """,
            (
                str(uuid.uuid4()),
                Config.ADMIN_USER,
                "Administrateur SIGB",
                generate_password_hash(Config.ADMIN_PASS),
            ),
        )
        print(f"✅ Default admin created: {Config.ADMIN_USER}")

    conn.commit()
    cur.close()
    conn.close()
    print("✅ Library schema initialized successfully.")


if __name__ == "__main__":
    init_schema()
