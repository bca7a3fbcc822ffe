import os
import sys
import traceback
from io import BytesIO

import pandas as pd
import streamlit as st

# --- Add project root to sys.path ---
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

# --- Import the analysis modules ---
from AUTOTUNE import (AutotuneEngine, DimensionMismatchError, MODES, export_filename, serialize_tune)
from log_loader import IGNORE_FIRST_SECONDS, LogDataset
from log_score import compile_log_issues, issues_to_dataframe, run_all_analyses, summarize_issues
from tuning_loader import CalibrationStore
from error_reporter import build_report_context, send_to_google_sheets

# --- Constants ---
DOMAIN_LABELS = {
    'knock': "Knock Retard",
    'boost': "Boost Control",
    'afr': "Air/Fuel Ratio (Power Enrichment)",
    'stft': "Short Term Fuel Trim",
    'ltft': "Long Term Fuel Trim",
    'coolant': "Coolant Temperature",
    'iat': "Intake Air Temperature",
    'load_limit': "Load Limit",
    'iam': "Ignition Advance Multiplier",
}
RESULT_TABLE_KEYS = {
    'knock': 'results_knk',
    'boost': 'results_boost',
    'afr': 'results_afr',
    'stft': 'results_stft',
    'ltft': 'results_ltft',
    'coolant': 'results_coolant',
    'iat': 'results_iat',
    'load_limit': 'results_load',
    'iam': 'results_iam',
}

# --- Page Configuration ---
st.set_page_config(
    page_title="TuneScope",
    layout="wide"
)

st.title("TuneScope")

# --- 1. Sidebar for Settings ---
with st.sidebar:
    st.header("Analysis Settings")

    # --- Module Selection ---
    selected_domains = [
        domain for domain, label in DOMAIN_LABELS.items()
        if st.checkbox(label, value=True, key=f"run_{domain}")
    ]
    run_autotune = st.checkbox("Autotune Fuel Correction", value=True, key="run_autotune")

    st.divider()

    st.subheader("Global Settings")
    skip_seconds = st.number_input(
        "Ignore first seconds of log", min_value=0.0, max_value=120.0,
        value=IGNORE_FIRST_SECONDS, step=1.0,
        help="Start-up data is usually unrepresentative and is skipped."
    )
    include_stft = st.checkbox(
        "Include STFT in log score", value=False,
        help="Short term trims are noisy; long term trims are always included."
    )

    if run_autotune:
        st.divider()
        st.subheader("Autotune Settings")
        autotune_mode = st.radio("Target table", MODES, horizontal=True, key="autotune_mode")
        min_samples = st.number_input("Minimum samples per cell", min_value=1, value=5, step=1)
        change_limit = st.slider(
            "Change limit (%)", 0.0, 25.0, 5.0, 0.5,
            help="Largest change per cell relative to the loaded tune. 0 disables the limit."
        )
        min_hit_weight = st.slider(
            "Minimum hit weight", 0.0, 1.0, 0.0, 0.05,
            help="Ignore samples that sit close to a cell edge."
        )

# --- 2. Main Area for File Uploads ---
st.subheader("1. Upload Tune & Log Files")
uploaded_tune_file = st.file_uploader("Upload tune file", type=['tune', 'json'])
uploaded_log_files = st.file_uploader("Upload .csv log files", type=['csv'], accept_multiple_files=True)
uploaded_base_file = None
if run_autotune:
    uploaded_base_file = st.file_uploader(
        "Optional: base tune to write corrections into", type=['tune', 'json'],
        help="Corrections are still limited against the tune used for analysis."
    )


# --- Helper Functions ---

def style_changed_cells(new_df: pd.DataFrame, old_df: pd.DataFrame):
    """Compares two DataFrames and returns a Styler object with changed cells highlighted."""
    try:
        new_df_c = new_df.copy().astype(float)
        old_df_c = old_df.copy().astype(float)
        old_df_aligned, new_df_aligned = old_df_c.align(new_df_c, join='outer', axis=None)
        style_df = pd.DataFrame('', index=new_df.index, columns=new_df.columns)
        increase_style = 'background-color: #2B442B'
        decrease_style = 'background-color: #442B2B'
        style_df[new_df_aligned > old_df_aligned] = increase_style
        style_df[new_df_aligned < old_df_aligned] = decrease_style
        return new_df.style.apply(lambda x: style_df, axis=None).format("{:.2f}")
    except (ValueError, TypeError):
        return new_df.style


def show_warnings(label, results):
    for warning in results.get('warnings', []):
        st.warning(f"{label} Warning: {warning}")


@st.cache_data(show_spinner="Reading log files...")
def cached_load_dataset(log_contents, skip):
    log_df = pd.concat((pd.read_csv(BytesIO(c), encoding='latin1') for c in log_contents),
                       ignore_index=True)
    return LogDataset.from_frame(log_df, skip_seconds=skip)


@st.cache_resource(show_spinner="Loading tune file...")
def cached_load_store(tune_content):
    store = CalibrationStore()
    if not store.parse(tune_content):
        return None
    return store


@st.cache_data(show_spinner="Running event analyses...")
def cached_run_all_analyses(_dataset, _store, domains, cache_key):
    return run_all_analyses(_dataset, _store, domains=domains)


def display_corrections(results):
    corrections = results['corrections']
    if not corrections:
        st.info("No cells met the sample requirement. Nothing to change.")
        return
    records = [{
        'index': cell.index,
        'breakpoints': cell.breakpoints,
        'source': cell.source,
        'samples': cell.samples,
        'current': cell.current_value,
        'suggested': cell.suggested_value,
        'applied': cell.applied_value,
        'change_pct': cell.change_pct,
        'applied_change_pct': cell.applied_change_pct,
        'clamped': cell.clamped,
    } for cell in corrections]
    st.dataframe(pd.DataFrame(records), use_container_width=True)


def display_autotune_results(engine, results, base_content):
    if results['status'] != 'Success':
        st.error(f"Autotune failed: {results['error']}")
        return
    show_warnings("Autotune", results)

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Open loop rows", f"{results['open_loop_rows']:,}")
    col2.metric("Closed loop rows", f"{results['closed_loop_rows']:,}")
    col3.metric("Cells modified", results['modified_cell_count'])
    col4.metric("Cells clamped", len(results['clamped_cells']))

    if results['mode'] == 'fuel_base':
        rpm_labels = [str(x) for x in results['rpm_axis']]
        load_labels = [str(x) for x in results['load_axis']]
        original_df = pd.DataFrame(results['current_table'], index=rpm_labels, columns=load_labels)
        recommended_df = results['results_fuel']
        tab1, tab2, tab3 = st.tabs(["Recommended fuel_base", "Cell Corrections", "Hit Counts"])
        with tab1:
            st.dataframe(style_changed_cells(recommended_df, original_df))
        with tab2:
            display_corrections(results)
        with tab3:
            st.dataframe(pd.DataFrame(results['hit_counts'], index=rpm_labels, columns=load_labels))
    else:
        tab1, tab2 = st.tabs(["Recommended maf_scale", "Cell Corrections"])
        with tab1:
            st.dataframe(results['results_maf'], use_container_width=True)
            if results['rows_missing_maf_voltage']:
                st.info(f"{results['rows_missing_maf_voltage']} rows had no MAF voltage.")
        with tab2:
            display_corrections(results)

    try:
        document = engine.export_corrected_calibration(results, base_document=base_content)
    except DimensionMismatchError as e:
        st.error(f"Cannot merge into the base tune: {e}")
        return
    except (KeyError, ValueError) as e:
        st.error(f"Could not build the corrected tune: {e}")
        return

    source_name = uploaded_base_file.name if base_content is not None else uploaded_tune_file.name
    st.download_button(
        "Download corrected tune",
        data=serialize_tune(document),
        file_name=export_filename(f"autotuned_{os.path.splitext(source_name)[0]}"),
        mime="application/json",
    )


def display_event_results(all_results):
    for domain, results in all_results.items():
        label = DOMAIN_LABELS[domain]
        with st.expander(f"{label} Results", expanded=False):
            if results['status'] != 'Success':
                st.error(results['error'])
                continue
            show_warnings(label, results)
            stats = results['statistics']
            col1, col2, col3 = st.columns(3)
            col1.metric("Event groups", stats['total_events'])
            col2.metric("In target", f"{stats['in_target_percent']:.1f}%")
            col3.metric("Transients dropped", stats['dropped_transients'])
            table = results.get(RESULT_TABLE_KEYS[domain])
            if table is not None and not table.empty:
                st.dataframe(table, use_container_width=True)
            else:
                st.info("No events detected.")
            with st.expander("Matched log columns"):
                st.json({k: v for k, v in results['resolved_columns'].items()})


def display_log_score(all_results):
    issues = compile_log_issues(all_results, include_stft=include_stft)
    summary = summarize_issues(issues)
    col1, col2 = st.columns(2)
    col1.metric("Total issues", summary['total_issues'])
    col2.metric("Critical issues", summary['critical_issues'])
    if not issues:
        st.success("No issues found in this log.")
        return
    st.bar_chart(pd.Series(summary['by_source'], name='issues'))
    issues_df = issues_to_dataframe(issues)
    critical_only = st.toggle("Show critical issues only", value=False)
    if critical_only:
        issues_df = issues_df[issues_df['critical']]
    st.dataframe(issues_df, use_container_width=True)


# --- 3. Run Button and Logic ---
st.divider()

if st.button("Run TuneScope Analysis", type="primary", use_container_width=True):
    st.session_state.run_analysis = True

if st.session_state.get('run_analysis'):
    required_files = {"Log file(s)": uploaded_log_files}
    if run_autotune:
        required_files["Tune file"] = uploaded_tune_file
    missing_files = [name for name, file in required_files.items() if not file]

    if missing_files:
        st.error(f"Please upload all required files. Missing: {', '.join(missing_files)}")
        st.session_state.run_analysis = False
    else:
        report_settings = {
            'domains': selected_domains,
            'autotune': run_autotune,
            'skip_seconds': skip_seconds,
            'autotune_mode': autotune_mode if run_autotune else None,
        }
        dataset, store, all_results, autotune_results = None, None, {}, None
        try:
            with st.status("Starting TuneScope analysis...", expanded=True) as status:
                status.update(label="Reading log files...")
                dataset = cached_load_dataset(tuple(f.getvalue() for f in uploaded_log_files), skip_seconds)
                if len(dataset) == 0:
                    raise ValueError("No usable rows were found in the uploaded log files.")
                st.write(f"Loaded {len(dataset):,} rows spanning "
                         f"{dataset.time_range[1] - dataset.time_range[0]:.1f} seconds.")

                if uploaded_tune_file is not None:
                    status.update(label="Loading tune file...")
                    store = cached_load_store(uploaded_tune_file.getvalue())
                    if store is None:
                        st.warning("The tune file could not be parsed. Tune-derived thresholds will use defaults.")
                    else:
                        st.write(f"Loaded {len(store.maps)} maps from {uploaded_tune_file.name}.")

                if selected_domains:
                    status.update(label="Running event analyses...")
                    cache_key = (tuple(f.file_id for f in uploaded_log_files),
                                 uploaded_tune_file.file_id if uploaded_tune_file else None, skip_seconds)
                    all_results = cached_run_all_analyses(dataset, store, tuple(selected_domains), cache_key)

                engine = None
                if run_autotune:
                    status.update(label="Running autotune...")
                    engine = AutotuneEngine(dataset, store)
                    autotune_results = engine.analyze(
                        min_samples=min_samples, change_limit_percent=change_limit,
                        min_hit_weight=min_hit_weight, mode=autotune_mode
                    )

                status.update(label="Analysis complete!", state="complete", expanded=False)

            # --- Display All Results ---
            st.header("Analysis Results")

            if all_results:
                st.subheader("Log Score")
                display_log_score(all_results)
                st.subheader("Event Analyses")
                display_event_results(all_results)

            if autotune_results is not None:
                st.subheader("Autotune")
                base_content = uploaded_base_file.getvalue() if uploaded_base_file is not None else None
                display_autotune_results(engine, autotune_results, base_content)

        except Exception as e:
            st.error(f"An unexpected error occurred during the analysis: {e}")
            st.write("You can help improve TuneScope by sending this error report to the developer.")
            traceback_str = traceback.format_exc()
            report_context = build_report_context(report_settings, dataset, store, all_results, autotune_results)

            with st.form(key="error_report_form"):
                st.write("**An unexpected error occurred.** You can help by sending this report.")
                user_description = st.text_area(
                    "Optional: Please describe what you were doing when the error occurred."
                )
                user_contact = st.text_input(
                    "Optional: Email or username for follow-up questions."
                )
                st.text_area(
                    "Technical Error Details (for submission)",
                    value=traceback_str,
                    height=200,
                    disabled=True
                )
                submit_button = st.form_submit_button("Submit Error Report")

                if submit_button:
                    with st.spinner("Sending report..."):
                        success, message = send_to_google_sheets(
                            traceback_str, user_description, user_contact, context=report_context)
                        if success:
                            st.success("Thank you! Your error report has been sent.")
                        else:
                            st.error(f"Sorry, the report could not be sent. Reason: {message}")
                            st.error("Please copy the details below and report it manually.")

            with st.expander("Click to view technical error details"):
                st.code(traceback_str, language=None)

            st.session_state.run_analysis = False
