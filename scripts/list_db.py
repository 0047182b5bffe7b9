import sys
from sqlalchemy import inspect, text
import database

database.configure(sys.argv[1] if len(sys.argv) > 1 else None)
if not getattr(database, 'engine', None):
    print('NO_ENGINE')
    sys.exit(0)
ins = inspect(database.engine)
print('TABLES:', ins.get_table_names())
Session = database.SessionLocal
s = Session()
for t in ['users', 'games', 'game_tags', 'game_reviews', 'game_downloads']:
    try:
        cnt = s.execute(text(f"SELECT count(*) FROM {t}")).scalar()
        print(f"{t}: {cnt}")
    except Exception as e:
        print(f"{t}: ERROR {e}")
s.close()
