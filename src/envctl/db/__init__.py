"""Supabase (PostgREST) persistence for environment records."""
