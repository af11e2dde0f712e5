from maintenance_service.maintenance import MaintenanceReport, run_maintenance
