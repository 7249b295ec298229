"""Azure Functions app for the UDES E-Exchange mail outbox"""
import azure.functions as func
from src.udes_mail_outbox.blueprints.timers.bp_mail_queue import bp as mail_queue_bp
from src.udes_mail_outbox.blueprints.bp_crud_api import bp_api as mail_queue_api_bp

app = func.FunctionApp()

# Register the blueprints
app.register_blueprint(mail_queue_bp)  # Mail Queue Timer Trigger
app.register_blueprint(mail_queue_api_bp)  # Mail Queue Operator API
