import uuid

from werkzeug.security import generate_password_hash

from db_mysql import get_conn
from services.validators import generate_user_barcode

# 🧑‍💼 Local staff accounts for when Active Directory is unreachable (email, full_name, role, password)
staff = [
    ("bibliothecaire@udm.edu.cm", "Bibliothécaire principal", "bibliothecaire", "Biblio2024!"),
    ("catalogue@udm.edu.cm", "Service du catalogage", "enregistrement", "Catalogue2024!"),
    ("pret@udm.edu.cm", "Service du prêt", "circulation", "Pret2024!"),
]


def seed():
    conn = get_conn()
    cur = conn.cursor()
    for email, full_name, role, password in staff:
        cur.execute(
            """
            INSERT INTO users (id, email, full_name, role, password_hash, barcode, max_loans, max_reservations)
            VALUES (%s, %s, %s, %s, %s, %s, 5, 5)
            ON DUPLICATE KEY UPDATE full_name = VALUES(full_name), role = VALUES(role),
                                    password_hash = VALUES(password_hash)
            """,
            (str(uuid.uuid4()), email, full_name, role, generate_password_hash(password), generate_user_barcode()),
        )
        print(f"✅ Registered {role}: {email}")
    conn.commit()
    cur.close()
    conn.close()
    print("🎉 Done seeding staff accounts!")


if __name__ == "__main__":
    seed()
