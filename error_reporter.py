# error_reporter.py

import streamlit as st
import gspread
from datetime import datetime
import json
import traceback

SHEET_NAME = "TuneScope Error Reports"

APP_VERSION = "0.1.0"


def build_report_context(settings, dataset=None, store=None, event_results=None, autotune_results=None):
    """
    Snapshot of the run attached to an error report: the sidebar settings,
    the log and tune that were loaded, and the outcome of each analysis that
    finished before the error. Stages that never ran are left out.
    """
    context = {'app_version': APP_VERSION, 'settings': dict(settings)}

    if dataset is not None:
        context['log'] = {
            'rows': len(dataset),
            'time_range': list(dataset.time_range),
            'unmapped_channels': sorted(f for f, col in dataset.resolved_columns.items() if col is None),
        }

    if store is not None:
        context['tune'] = {
            'version': store.get_version(),
            'cal_id': store.get_metadata().get('cal_id'),
            'map_count': len(store.maps),
        }

    if event_results:
        context['analyses'] = {
            domain: {
                'status': result.get('status'),
                'event_groups': len(result.get('event_groups', [])),
                'error': result.get('error'),
            }
            for domain, result in event_results.items()
        }

    if autotune_results is not None:
        context['autotune'] = {
            'status': autotune_results.get('status'),
            'mode': autotune_results.get('mode'),
            'error_code': autotune_results.get('error_code'),
            'modified_cells': autotune_results.get('modified_cell_count', 0),
        }

    return context


def build_report_row(traceback_str, user_description, user_contact, context=None):
    """Orders a report into the sheet's columns: timestamp, description, contact, context, traceback."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    context_str = json.dumps(context or {}, default=str)
    return [timestamp, user_description, user_contact, context_str, traceback_str]


def send_to_google_sheets(traceback_str, user_description, user_contact, context=None):
    """
    Connects to Google Sheets and appends the error report.
    Returns a tuple: (success_boolean, message_string)
    """
    try:
        creds_json_str = st.secrets["google_sheets_creds"]["creds_json"]
        creds_dict = json.loads(creds_json_str)

        gc = gspread.service_account_from_dict(creds_dict)

        spreadsheet = gc.open(SHEET_NAME)
        worksheet = spreadsheet.sheet1
        worksheet.append_row(build_report_row(traceback_str, user_description, user_contact, context))

        return True, "Report sent successfully!"

    except Exception as e:
        # Log the failure and hand a message back to the form
        error_message = f"Failed to send error report: {e}"
        print(f"--- ERROR IN GOOGLE SHEETS REPORTER: {error_message} ---")
        print(traceback.format_exc())
        return False, error_message
