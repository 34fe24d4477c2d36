"""
Backend adapters, one per supported database type.
"""

from .mongodb import MongoDBAdapter, MongoTransaction
from .mysql import MySQLAdapter
from .postgresql import PostgreSQLAdapter
from .sqlite import SQLiteAdapter
from .supabase import SupabaseAdapter
from .views import tenant_view_name

__all__ = [
    'PostgreSQLAdapter',
    'MySQLAdapter',
    'SQLiteAdapter',
    'MongoDBAdapter',
    'SupabaseAdapter',
    'MongoTransaction',
    'tenant_view_name'
]
