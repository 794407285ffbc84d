from flask import (
    Flask,
    render_template,
    redirect,
    url_for,
    request,
    flash,
    abort,
    Response,
)
from flask_sqlalchemy import SQLAlchemy
from flask_login import (
    LoginManager,
    login_user,
    logout_user,
    login_required,
)
from datetime import datetime
import os
import click
import secrets
from urllib.parse import urlparse

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError


db = SQLAlchemy()
login_manager = LoginManager()


def create_app():
    app = Flask(__name__)
    db_file = os.environ.get('TT_DB_PATH', 'tt_portal.db')
    log_db_file = os.environ.get('TT_LOG_DB_PATH', db_file.replace('.db', '_logs.db'))
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('TT_DATABASE_URL') or f'sqlite:///{db_file}'
    app.config['SQLALCHEMY_BINDS'] = {
        'logs': f'sqlite:///{log_db_file}',
    }
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = os.environ.get('FLASK_SECRET', 'dev-secret-change-me')
    app.config['ADMIN_ACCESS_TOKEN'] = os.environ.get('ADMIN_ACCESS_TOKEN', '')
    app.config['IMPORT_STAGING_DIR'] = os.environ.get(
        'TT_IMPORT_STAGING_DIR',
        os.path.join(app.instance_path, 'imports'),
    )
    app.config['IMPORT_CHUNK_SIZE'] = int(os.environ.get('TT_IMPORT_CHUNK_SIZE', 500))
    app.config['IMPORT_MAX_ISSUES'] = int(os.environ.get('TT_IMPORT_MAX_ISSUES', 100))
    app.config['IMPORT_FUZZY_THRESHOLD'] = int(os.environ.get('TT_IMPORT_FUZZY_THRESHOLD', 90))

    db.init_app(app)
    login_manager.init_app(app)
    login_manager.login_view = 'admin_login'
    login_manager.login_message = 'Enter the admin token to continue.'
    login_manager.login_message_category = 'error'

    from .models import (
        AdminUser,
        Tournament,
        RosterEntry,
        Match,
        RankingEntry,
        MediaItem,
        SiteLog,
        TournamentLog,
        GENDERS,
        ROUNDS,
        ROUND_CODES,
        MEDIA_TYPES,
        TOURNAMENT_TYPES,
        TOURNAMENT_STATUSES,
    )
    from . import importer
    from .spreadsheets import ImportFailure, Upload, SheetInfo, build_template
    from .values import to_str, to_int, to_bool, to_gender, to_datetime
    from .listing import (
        Pager,
        parse_page,
        gender_filter,
        query_string,
        guarded,
        MATCHES_PAGE_SIZE,
        RANKING_PAGE_SIZE,
        MEDIA_PAGE_SIZE,
    )

    staging = importer.UploadStaging(app.config['IMPORT_STAGING_DIR'])

    @login_manager.user_loader
    def load_user(user_id):
        return AdminUser() if user_id == AdminUser.id else None

    app.add_template_global(query_string)

    @app.context_processor
    def inject_helpers():
        return {
            'rounds': ROUNDS,
            'round_labels': dict(ROUNDS),
        }

    # ---------- CLI ----------
    @app.cli.command('db-init')
    def db_init():
        db.create_all()
        print("Database initialized.")

    @app.cli.command('import-file')
    @click.argument('kind', type=click.Choice(importer.KINDS))
    @click.argument('path', type=click.Path(exists=True, dir_okay=False))
    @click.option('--tournament', 'tournament_id', type=int, required=True, help='Target tournament ID')
    @click.option('--sheet', 'sheet_name', default=None, help='Workbook sheet (default: first)')
    @click.option('--gender', type=click.Choice(GENDERS), default=None)
    @click.option('--delimiter', default=',', help="CSV delimiter: ',', ';' or 'tab'")
    @click.option('--map', 'mappings', multiple=True, help='field=Column, e.g. a_full="Player A"')
    def import_file(kind, path, tournament_id, sheet_name, gender, delimiter, mappings):
        allowed = importer.FIELDS_BY_KIND.get(kind, ())
        mapping = {}
        for item in mappings:
            field, sep, column = item.partition('=')
            field = field.strip()
            if not sep or field not in allowed:
                raise click.BadParameter(f"{item!r} (fields for {kind}: {', '.join(allowed) or 'none'})",
                                         param_hint='--map')
            mapping[field] = column.strip() or None
        req = importer.ImportRequest(
            kind=kind,
            tournament_id=tournament_id,
            gender=gender,
            delimiter=delimiter,
            sheet_name=sheet_name,
            mapping=mapping,
        )
        try:
            count = run_import(req, Upload.from_path(path))
        except ImportFailure as e:
            raise click.ClickException(str(e))
        print(f"{kind} import OK · {count} rows")

    # ---------- helpers ----------
    def log_site(action, result, error=None):
        log = SiteLog(action=action, result=result, error=error)
        db.session.add(log)
        db.session.commit()

    def log_tournament(tid, action, result, error=None):
        log = TournamentLog(tournament_id=tid, action=action, result=result, error=error)
        db.session.add(log)
        db.session.commit()

    def run_import(req, upload):
        """Run and commit one import, recording the outcome in the audit logs."""
        action = f'import_{req.kind}'
        try:
            count = importer.run_import(
                req,
                upload,
                chunk_size=app.config['IMPORT_CHUNK_SIZE'],
                max_issues=app.config['IMPORT_MAX_ISSUES'],
                fuzzy_threshold=app.config['IMPORT_FUZZY_THRESHOLD'],
            )
            db.session.commit()
        except ImportFailure as e:
            db.session.rollback()
            log_site(action, 'failure', str(e))
            raise
        except (SQLAlchemyError, ValueError) as e:
            db.session.rollback()
            app.logger.exception('%s failed for tournament %s', action, req.tournament_id)
            log_site(action, 'failure', str(e))
            raise ImportFailure(f"Database error, nothing was saved: {e}") from e
        log_site(action, 'success', f'count={count}')
        log_tournament(req.tournament_id, action, 'success', f'count={count}')
        return count

    def safe_next(target):
        if not target:
            return None
        parsed = urlparse(target)
        if parsed.scheme or parsed.netloc or not target.startswith('/'):
            return None
        return target

    def admin_redirect(tid=None):
        return redirect(url_for('admin_index', tid=tid) if tid else url_for('admin_index'))

    def recent_tournaments(limit):
        return (
            db.session.query(Tournament)
            .order_by(Tournament.created_at.desc(), Tournament.id.desc())
            .limit(limit)
            .all()
        )

    def matches_newest_first(query):
        return query.order_by(Match.started_at.is_(None), Match.started_at.desc(), Match.id.desc())

    def event_options(model, tid):
        rows = (
            db.session.query(model.event)
            .filter(model.tournament_id == tid, model.event.isnot(None))
            .order_by(model.event)
            .limit(500)
            .all()
        )
        options = []
        for (event,) in rows:
            if event and event not in options:
                options.append(event)
        return options

    def get_tournament_or_404(tid):
        t = db.session.get(Tournament, tid)
        if not t:
            abort(404)
        return t

    # ---------- Public ----------
    @app.route('/')
    def index():
        tournaments = (
            db.session.query(Tournament)
            .filter(Tournament.status != 'draft')
            .order_by(Tournament.starts_at.is_(None), Tournament.starts_at.desc(), Tournament.created_at.desc())
            .all()
        )
        return render_template('index.html', tournaments=tournaments)

    @app.route('/tournaments/<int:tid>')
    def view_tournament(tid):
        t = db.session.get(Tournament, tid)
        if not t:
            return render_template('tournament/not_found.html'), 404
        tab = request.args.get('tab', 'participants')
        if tab not in ('participants', 'matches', 'ranking', 'media'):
            tab = 'participants'
        ui_errors = []
        participants = guarded(
            db.session, ui_errors, 'Participants could not be loaded',
            lambda: db.session.query(RosterEntry).filter_by(tournament_id=tid)
            .order_by(RosterEntry.created_at, RosterEntry.id).limit(25).all(),
            [],
        )
        last_matches = guarded(
            db.session, ui_errors, 'Matches could not be loaded',
            lambda: matches_newest_first(db.session.query(Match).filter_by(tournament_id=tid)).limit(10).all(),
            [],
        )
        top4 = guarded(
            db.session, ui_errors, 'Ranking could not be loaded',
            lambda: db.session.query(RankingEntry).filter_by(tournament_id=tid)
            .order_by(RankingEntry.position).limit(4).all(),
            [],
        )
        media = guarded(
            db.session, ui_errors, 'Media could not be loaded',
            lambda: db.session.query(MediaItem).filter_by(tournament_id=tid)
            .order_by(MediaItem.created_at.desc(), MediaItem.id.desc()).limit(6).all(),
            [],
        )
        return render_template('tournament/view.html', t=t, tab=tab, participants=participants,
                               last_matches=last_matches, top4=top4, media=media, ui_errors=ui_errors)

    @app.route('/tournaments/<int:tid>/matches')
    def tournament_matches(tid):
        t = get_tournament_or_404(tid)
        q = (request.args.get('q') or '').strip()
        gender = gender_filter(request.args.get('gender'))
        rnd = request.args.get('round')
        rnd = rnd if rnd in ROUND_CODES else None
        pager = Pager(parse_page(request.args.get('page')), MATCHES_PAGE_SIZE)
        ui_errors = []

        roster_ids = None
        if q:
            pattern = f"%{q}%"
            roster_ids = guarded(
                db.session, ui_errors, 'Name filter could not be applied',
                lambda: [r.id for r in db.session.query(RosterEntry.id)
                         .filter(RosterEntry.tournament_id == tid)
                         .filter(or_(
                             RosterEntry.first_name.ilike(pattern),
                             RosterEntry.last_name.ilike(pattern),
                             (RosterEntry.first_name + ' ' + RosterEntry.last_name).ilike(pattern),
                         ))
                         .limit(500).all()],
                [],
            )

        matches = []
        if roster_ids is None or roster_ids:
            def load():
                query = db.session.query(Match).filter(Match.tournament_id == tid)
                if gender:
                    query = query.filter(Match.gender == gender)
                if rnd:
                    query = query.filter(Match.round == rnd)
                if roster_ids:
                    query = query.filter(or_(
                        Match.player_a_roster_id.in_(roster_ids),
                        Match.player_b_roster_id.in_(roster_ids),
                    ))
                pager.total = query.count()
                return matches_newest_first(query).offset(pager.offset).limit(pager.page_size).all()

            matches = guarded(db.session, ui_errors, 'Matches could not be loaded', load, [])
        return render_template('tournament/matches.html', t=t, matches=matches, pager=pager,
                               args=request.args.to_dict(), ui_errors=ui_errors)

    @app.route('/tournaments/<int:tid>/ranking')
    def tournament_ranking(tid):
        t = get_tournament_or_404(tid)
        q = (request.args.get('q') or '').strip()
        gender = gender_filter(request.args.get('gender'))
        event = (request.args.get('event') or '').strip() or None
        pager = Pager(parse_page(request.args.get('page')), RANKING_PAGE_SIZE)
        ui_errors = []
        events = guarded(db.session, ui_errors, 'Event list could not be loaded',
                         lambda: event_options(RankingEntry, tid), [])

        def load():
            query = db.session.query(RankingEntry).filter(RankingEntry.tournament_id == tid)
            if gender:
                query = query.filter(RankingEntry.gender == gender)
            if event:
                query = query.filter(RankingEntry.event.ilike(event))
            if q:
                pattern = f"%{q}%"
                query = query.filter(or_(RankingEntry.athlete_display.ilike(pattern),
                                         RankingEntry.club.ilike(pattern)))
            pager.total = query.count()
            return (query.order_by(RankingEntry.position, RankingEntry.id)
                    .offset(pager.offset).limit(pager.page_size).all())

        rows = guarded(db.session, ui_errors, 'Ranking could not be loaded', load, [])
        return render_template('tournament/ranking.html', t=t, rows=rows, events=events, pager=pager,
                               args=request.args.to_dict(), ui_errors=ui_errors)

    @app.route('/tournaments/<int:tid>/media')
    def tournament_media(tid):
        t = get_tournament_or_404(tid)
        q = (request.args.get('q') or '').strip()
        media_type = request.args.get('type')
        media_type = media_type if media_type in MEDIA_TYPES else None
        gender = gender_filter(request.args.get('gender'))
        event = (request.args.get('event') or '').strip() or None
        pager = Pager(parse_page(request.args.get('page')), MEDIA_PAGE_SIZE)
        ui_errors = []
        events = guarded(db.session, ui_errors, 'Event list could not be loaded',
                         lambda: event_options(MediaItem, tid), [])

        def load():
            query = db.session.query(MediaItem).filter(MediaItem.tournament_id == tid)
            if media_type:
                query = query.filter(MediaItem.type == media_type)
            if gender:
                query = query.filter(MediaItem.gender == gender)
            if event:
                query = query.filter(MediaItem.event.ilike(event))
            if q:
                pattern = f"%{q}%"
                query = query.filter(or_(MediaItem.caption.ilike(pattern), MediaItem.credit.ilike(pattern)))
            pager.total = query.count()
            return (query.order_by(MediaItem.created_at.desc(), MediaItem.id.desc())
                    .offset(pager.offset).limit(pager.page_size).all())

        items = guarded(db.session, ui_errors, 'Media could not be loaded', load, [])
        return render_template('tournament/media.html', t=t, items=items, events=events, pager=pager,
                               args=request.args.to_dict(), ui_errors=ui_errors)

    # ---------- Admin ----------
    @app.route('/admin/login', methods=['GET', 'POST'])
    def admin_login():
        if request.method == 'POST':
            token = request.form.get('admin_token', '')
            expected = app.config.get('ADMIN_ACCESS_TOKEN') or ''
            if not expected:
                flash('ADMIN_ACCESS_TOKEN is not configured.', 'error')
                log_site('login', 'failure', 'token not configured')
            elif not secrets.compare_digest(token.encode(), expected.encode()):
                flash('Unauthorized: admin token is incorrect.', 'error')
                log_site('login', 'failure', 'invalid token')
            else:
                login_user(AdminUser())
                log_site('login', 'success')
                return redirect(safe_next(request.args.get('next')) or url_for('admin_index'))
        return render_template('admin/login.html')

    @app.route('/admin/logout')
    @login_required
    def admin_logout():
        logout_user()
        log_site('logout', 'success')
        return redirect(url_for('index'))

    @app.route('/admin')
    @login_required
    def admin_index():
        tid = to_int(request.args.get('tid'))
        tournament = db.session.get(Tournament, tid) if tid else None
        roster, matches, ranking, media = [], [], [], []
        if tournament:
            roster = (db.session.query(RosterEntry).filter_by(tournament_id=tid)
                      .order_by(RosterEntry.created_at, RosterEntry.id).limit(200).all())
            matches = matches_newest_first(db.session.query(Match).filter_by(tournament_id=tid)).limit(200).all()
            ranking = (db.session.query(RankingEntry).filter_by(tournament_id=tid)
                       .order_by(RankingEntry.position).limit(200).all())
            media = (db.session.query(MediaItem).filter_by(tournament_id=tid)
                     .order_by(MediaItem.created_at.desc()).limit(200).all())
        elif tid:
            flash(f'Tournament {tid} not found.', 'error')
        return render_template('admin/index.html', tid=tid if tournament else None, tournament=tournament,
                               last_tournaments=recent_tournaments(5), roster=roster, matches=matches,
                               ranking=ranking, media=media, types=TOURNAMENT_TYPES,
                               statuses=TOURNAMENT_STATUSES)

    @app.route('/admin/tournaments/new', methods=['POST'])
    @login_required
    def admin_create_tournament():
        name = to_str(request.form.get('name'))
        if not name:
            flash('Tournament name is required.', 'error')
            return admin_redirect()
        t_type = request.form.get('type')
        status = request.form.get('status')
        t = Tournament(
            name=name,
            year=to_int(request.form.get('year')),
            city=to_str(request.form.get('city')),
            venue=to_str(request.form.get('venue')),
            type=t_type if t_type in TOURNAMENT_TYPES else 'private',
            status=status if status in TOURNAMENT_STATUSES else 'draft',
            starts_at=to_datetime(request.form.get('starts_at')),
            ends_at=to_datetime(request.form.get('ends_at')),
            poster_url=to_str(request.form.get('poster_url')),
        )
        try:
            db.session.add(t)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            log_site('tournament_create', 'failure', str(e))
            flash('Error creating tournament.', 'error')
            return admin_redirect()
        log_site('tournament_create', 'success', t.name)
        log_tournament(t.id, 'create', 'success')
        flash('Tournament created.', 'success')
        return admin_redirect(t.id)

    def add_record(action, tid, record):
        try:
            db.session.add(record)
            db.session.commit()
        except (SQLAlchemyError, ValueError) as e:
            db.session.rollback()
            log_tournament(tid, action, 'failure', str(e))
            flash(f'Could not save: {e}', 'error')
            return admin_redirect(tid)
        log_tournament(tid, action, 'success')
        flash('Saved.', 'success')
        return admin_redirect(tid)

    def form_tournament_id():
        tid = to_int(request.form.get('tournament_id'))
        if not tid or not db.session.get(Tournament, tid):
            return None
        return tid

    @app.route('/admin/roster/add', methods=['POST'])
    @login_required
    def admin_add_roster():
        tid = form_tournament_id()
        if not tid:
            flash('A valid tournament ID is required.', 'error')
            return admin_redirect()
        first_name = to_str(request.form.get('first_name'))
        last_name = to_str(request.form.get('last_name'))
        if not first_name or not last_name:
            flash('First and last name are required.', 'error')
            return admin_redirect(tid)
        entry = RosterEntry(tournament_id=tid, first_name=first_name, last_name=last_name,
                            club=to_str(request.form.get('club')), gender=to_gender(request.form.get('gender')))
        return add_record('add_roster', tid, entry)

    @app.route('/admin/matches/add', methods=['POST'])
    @login_required
    def admin_add_match():
        tid = form_tournament_id()
        if not tid:
            flash('A valid tournament ID is required.', 'error')
            return admin_redirect()
        a_id = to_int(request.form.get('player_a_roster_id'))
        b_id = to_int(request.form.get('player_b_roster_id'))
        if not a_id or not b_id:
            flash('Player A and player B roster IDs are required.', 'error')
            return admin_redirect(tid)
        found = {
            r.id for r in db.session.query(RosterEntry.id)
            .filter(RosterEntry.tournament_id == tid, RosterEntry.id.in_([a_id, b_id])).all()
        }
        if a_id not in found or b_id not in found:
            flash('Both players must be roster entries of this tournament.', 'error')
            return admin_redirect(tid)
        rnd = request.form.get('round')
        match = Match(
            tournament_id=tid,
            player_a_roster_id=a_id,
            player_b_roster_id=b_id,
            gender=to_gender(request.form.get('gender')),
            round=rnd if rnd in ROUND_CODES else None,
            score_summary=to_str(request.form.get('score_summary')),
            sets=to_str(request.form.get('sets')),
            table_no=to_str(request.form.get('table_no')),
            started_at=to_datetime(request.form.get('started_at')),
        )
        return add_record('add_match', tid, match)

    @app.route('/admin/ranking/add', methods=['POST'])
    @login_required
    def admin_add_ranking():
        tid = form_tournament_id()
        if not tid:
            flash('A valid tournament ID is required.', 'error')
            return admin_redirect()
        position = to_int(request.form.get('position'))
        if not position or position < 1:
            flash('Enter a valid position (1 or higher).', 'error')
            return admin_redirect(tid)
        athlete = to_str(request.form.get('athlete_display'))
        if not athlete:
            flash('Athlete name is required.', 'error')
            return admin_redirect(tid)
        row = RankingEntry(tournament_id=tid, position=position, athlete_display=athlete,
                           gender=to_gender(request.form.get('gender')),
                           event=to_str(request.form.get('event')), club=to_str(request.form.get('club')))
        return add_record('add_ranking', tid, row)

    @app.route('/admin/media/add', methods=['POST'])
    @login_required
    def admin_add_media():
        tid = form_tournament_id()
        if not tid:
            flash('A valid tournament ID is required.', 'error')
            return admin_redirect()
        url = to_str(request.form.get('url'))
        if not url:
            flash('Media URL is required.', 'error')
            return admin_redirect(tid)
        media_type = request.form.get('type')
        item = MediaItem(
            tournament_id=tid,
            type=media_type if media_type in MEDIA_TYPES else 'image',
            url=url,
            caption=to_str(request.form.get('caption')),
            credit=to_str(request.form.get('credit')),
            is_cover=bool(to_bool(request.form.get('is_cover'))),
            gender=to_gender(request.form.get('gender')),
            event=to_str(request.form.get('event')),
        )
        return add_record('add_media', tid, item)

    @app.route('/admin/logs')
    @login_required
    def site_logs():
        logs = db.session.query(SiteLog).order_by(SiteLog.timestamp.desc(), SiteLog.id.desc()).limit(500).all()
        return render_template('admin/site_logs.html', logs=logs)

    # ---------- Import ----------
    def staged_info(upload_id):
        if not upload_id:
            return None, None
        try:
            meta = staging.meta(upload_id)
        except importer.StagedUploadMissing as e:
            flash(str(e), 'error')
            return None, None
        return SheetInfo.from_dict(meta), meta

    @app.route('/admin/import')
    @login_required
    def admin_import():
        tid = to_int(request.args.get('tid'))
        preps = {}
        for kind in importer.TWO_STEP_KINDS:
            upload_id = request.args.get(f'prep_{kind}')
            info, meta = staged_info(upload_id)
            if info is None:
                continue
            sheet = request.args.get(f'sheet_{kind}') or ''
            if sheet not in info.sheet_names:
                sheet = info.sheet_names[0] if info.sheet_names else ''
            preps[kind] = {
                'upload_id': upload_id,
                'info': info,
                'sheet': sheet,
                'headers': info.headers(sheet),
                'filename': meta.get('filename'),
                'delimiter': meta.get('delimiter', ','),
            }
        return render_template('admin/import.html', tid=tid, gender=to_gender(request.args.get('g')),
                               tournaments=recent_tournaments(50), preps=preps,
                               fields_by_kind=importer.FIELDS_BY_KIND,
                               fixed_headers={'ranking': importer.RANKING_HEADERS, 'media': importer.MEDIA_HEADERS})

    def import_redirect(kind, **params):
        return redirect(url_for('admin_import', **params) + f'#{kind}')

    @app.route('/admin/import/<kind>/analyze', methods=['POST'])
    @login_required
    def admin_import_analyze(kind):
        if kind not in importer.TWO_STEP_KINDS:
            abort(404)
        tid = to_int(request.form.get('tournament_id'))
        gender = to_gender(request.form.get('gender_sel'))
        delimiter = request.form.get('delimiter') or ','
        try:
            importer.require_tournament(tid)
            upload = Upload.from_file_storage(request.files.get('file'))
            info = importer.analyze(upload, delimiter)
            upload_id = staging.stage(upload, dict(info.to_dict(), kind=kind, delimiter=delimiter,
                                                   tournament_id=tid, gender=gender))
        except ImportFailure as e:
            log_site(f'analyze_{kind}', 'failure', str(e))
            flash(str(e), 'error')
            return import_redirect(kind, tid=tid)
        log_site(f'analyze_{kind}', 'success', upload.filename)
        return import_redirect(kind, tid=tid, g=gender, **{f'prep_{kind}': upload_id})

    @app.route('/admin/import/<kind>', methods=['POST'])
    @login_required
    def admin_import_commit(kind):
        if kind not in importer.KINDS:
            abort(404)
        req = importer.ImportRequest.from_form(kind, request.form)
        upload = Upload.from_file_storage(request.files.get('file'))
        upload_id = request.form.get('upload_id')
        try:
            if upload is None and kind in importer.TWO_STEP_KINDS:
                upload, meta = staging.load(upload_id)
                if not request.form.get('delimiter'):
                    req.delimiter = meta.get('delimiter', ',')
            count = run_import(req, upload)
        except ImportFailure as e:
            flash(str(e), 'error')
            params = {'tid': req.tournament_id, 'g': req.gender}
            if upload_id and kind in importer.TWO_STEP_KINDS:
                params[f'prep_{kind}'] = upload_id
                params[f'sheet_{kind}'] = req.sheet_name
            return import_redirect(kind, **params)
        if upload_id:
            staging.discard(upload_id)
        flash(f'{kind.capitalize()} import OK · {count} rows', 'success')
        return import_redirect(kind, tid=req.tournament_id)

    @app.route('/admin/import/templates/<kind>.xlsx')
    @login_required
    def admin_import_template(kind):
        rows = importer.TEMPLATE_ROWS.get(kind)
        if rows is None:
            abort(404)
        return Response(
            build_template(rows),
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            headers={'Content-Disposition': f'attachment; filename={kind.capitalize()}.xlsx'},
        )

    @app.template_filter('fmt_dt')
    def fmt_dt(value):
        if not value:
            return '—'
        if isinstance(value, datetime):
            return value.strftime('%d.%m.%Y %H:%M')
        return str(value)

    return app
