# Citizen Grievance Portal web frontend
