from studio.admin.routes import admin_bp, diagnostics_bp

__all__ = ["admin_bp", "diagnostics_bp"]
