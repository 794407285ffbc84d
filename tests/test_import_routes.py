import io
import os
from urllib.parse import parse_qs, urlparse

from openpyxl import Workbook, load_workbook
from sqlalchemy import event

from ttportal.models import Match, MediaItem, RankingEntry, RosterEntry, SiteLog, TournamentLog


def csv_file(text, name='upload.csv'):
    return (io.BytesIO(text.encode('utf-8')), name)


def xlsx_file(sheets, name='upload.xlsx'):
    wb = Workbook()
    wb.remove(wb.active)
    for sheet_name, rows in sheets.items():
        ws = wb.create_sheet(sheet_name)
        for row in rows:
            ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)
    return (buffer, name)


def analyze(client, kind, tid, upload, gender='M'):
    resp = client.post(
        f'/admin/import/{kind}/analyze',
        data={'tournament_id': tid, 'gender_sel': gender, 'delimiter': ',', 'file': upload},
        content_type='multipart/form-data',
    )
    assert resp.status_code == 302
    params = parse_qs(urlparse(resp.headers['Location']).query)
    return params[f'prep_{kind}'][0]


def test_import_requires_login(client, tournament):
    resp = client.post('/admin/import/ranking', data={'tournament_id': tournament.id})
    assert resp.status_code == 302
    assert '/admin/login' in resp.headers['Location']


def test_roster_two_step_csv(admin_client, app, session, tournament):
    upload_id = analyze(admin_client, 'roster', tournament.id,
                        csv_file('Player,Club\n"Yılmaz, Ahmet",BŞB\nMehmet Kaya,GS\n'))

    page = admin_client.get(f'/admin/import?tid={tournament.id}&prep_roster={upload_id}')
    html = page.get_data(as_text=True)
    assert page.status_code == 200
    assert '<option value="Player">Player</option>' in html
    assert f'value="{upload_id}"' in html

    resp = admin_client.post('/admin/import/roster', data={
        'tournament_id': tournament.id,
        'gender_sel': 'M',
        'upload_id': upload_id,
        'sheet_name': 'CSV',
        'delimiter': ',',
        'map_full': 'Player',
        'map_club': 'Club',
    }, follow_redirects=True)
    assert 'Roster import OK · 2 rows' in resp.get_data(as_text=True)

    entries = session.query(RosterEntry).order_by(RosterEntry.id).all()
    assert [(e.first_name, e.last_name, e.club, e.gender) for e in entries] == [
        ('Ahmet', 'Yılmaz', 'BŞB', 'M'),
        ('Mehmet', 'Kaya', 'GS', 'M'),
    ]
    assert os.listdir(app.config['IMPORT_STAGING_DIR']) == []
    assert session.query(TournamentLog).filter_by(action='import_roster', result='success').count() == 1


def test_roster_import_rejects_whole_batch(admin_client, session, tournament):
    upload_id = analyze(admin_client, 'roster', tournament.id,
                        csv_file('First,Last\nAhmet,Yılmaz\nMehmet,\n'))
    resp = admin_client.post('/admin/import/roster', data={
        'tournament_id': tournament.id,
        'upload_id': upload_id,
        'map_first': 'First',
        'map_last': 'Last',
    })
    assert resp.status_code == 302
    assert f'prep_roster={upload_id}' in resp.headers['Location']
    html = admin_client.get(resp.headers['Location']).get_data(as_text=True)
    assert 'Incomplete or malformed rows found. Nothing was saved.' in html
    assert 'Row 3: first/last name missing' in html
    assert session.query(RosterEntry).count() == 0
    assert session.query(SiteLog).filter_by(action='import_roster', result='failure').count() == 1


def test_roster_mapping_required(admin_client, session, tournament):
    upload_id = analyze(admin_client, 'roster', tournament.id, csv_file('Player\nAhmet Yılmaz\n'))
    resp = admin_client.post('/admin/import/roster', data={
        'tournament_id': tournament.id,
        'upload_id': upload_id,
    }, follow_redirects=True)
    assert 'Select a full name column or both first and last name columns.' in resp.get_data(as_text=True)
    assert session.query(RosterEntry).count() == 0


def test_roster_two_step_xlsx_with_sheet_choice(admin_client, session, tournament):
    upload = xlsx_file({
        'Men': [['Player'], ['Ahmet Yılmaz']],
        'Women': [['Ad', 'Soyad', 'Kulüp'], ['Elif', 'Koç', 'Fenerbahçe'], ['Zeynep', 'Kurt', None]],
    })
    upload_id = analyze(admin_client, 'roster', tournament.id, upload, gender='F')

    html = admin_client.get(
        f'/admin/import?tid={tournament.id}&prep_roster={upload_id}&sheet_roster=Women'
    ).get_data(as_text=True)
    assert '<option value="Soyad">Soyad</option>' in html

    resp = admin_client.post('/admin/import/roster', data={
        'tournament_id': tournament.id,
        'gender_sel': 'F',
        'upload_id': upload_id,
        'sheet_name': 'Women',
        'map_first': 'Ad',
        'map_last': 'Soyad',
        'map_club': 'Kulüp',
    }, follow_redirects=True)
    assert 'Roster import OK · 2 rows' in resp.get_data(as_text=True)
    assert {e.full_name for e in session.query(RosterEntry).all()} == {'Elif Koç', 'Zeynep Kurt'}
    assert {e.gender for e in session.query(RosterEntry).all()} == {'F'}


def test_missing_sheet_is_reported(admin_client, session, tournament):
    upload_id = analyze(admin_client, 'roster', tournament.id, xlsx_file({'Men': [['Player'], ['A B']]}))
    resp = admin_client.post('/admin/import/roster', data={
        'tournament_id': tournament.id,
        'upload_id': upload_id,
        'sheet_name': 'Juniors',
        'map_full': 'Player',
    }, follow_redirects=True)
    assert 'Selected sheet not found: Juniors' in resp.get_data(as_text=True)


def test_matches_two_step(admin_client, session, tournament, roster):
    upload_id = analyze(admin_client, 'matches', tournament.id, csv_file(
        'A,B,Round,Score,Sets,Table,Time\n'
        'ahmet yilmaz,KAYA MEHMET,SF,3-1,"11-7,9-11,11-6,11-8",2,2025-09-01 15:30\n'
        'Emre Demir,Mehmet Kaya,F,3-0,,1,\n'
    ))
    resp = admin_client.post('/admin/import/matches', data={
        'tournament_id': tournament.id,
        'gender_sel': 'M',
        'upload_id': upload_id,
        'map_a_full': 'A',
        'map_b_full': 'B',
        'map_round': 'Round',
        'map_score': 'Score',
        'map_sets': 'Sets',
        'map_table': 'Table',
        'map_time': 'Time',
    }, follow_redirects=True)
    assert 'Matches import OK · 2 rows' in resp.get_data(as_text=True)
    semi = session.query(Match).filter_by(round='sf').one()
    assert semi.player_a.first_name == 'Ahmet'
    assert semi.player_b.first_name == 'Mehmet'
    assert semi.sets == '11-7,9-11,11-6,11-8'
    assert semi.table_no == '2'
    assert semi.started_at.minute == 30
    final = session.query(Match).filter_by(round='f').one()
    assert final.started_at is None


def test_matches_unresolved_names_reject_batch(admin_client, session, tournament, roster):
    upload_id = analyze(admin_client, 'matches', tournament.id, csv_file(
        'A,B\nAhmet Yılmaz,Mehmet Kaya\nAhmet Yılmaz,Zeynep Kurt\n'
    ))
    resp = admin_client.post('/admin/import/matches', data={
        'tournament_id': tournament.id,
        'upload_id': upload_id,
        'map_a_full': 'A',
        'map_b_full': 'B',
    }, follow_redirects=True)
    html = resp.get_data(as_text=True)
    assert 'Unmatched or ambiguous rows found. Nothing was saved.' in html
    assert 'B[Zeynep Kurt]' in html
    assert session.query(Match).count() == 0


def test_commit_with_expired_upload(admin_client, tournament):
    resp = admin_client.post('/admin/import/roster', data={
        'tournament_id': tournament.id,
        'upload_id': '0' * 32,
        'map_full': 'Player',
    }, follow_redirects=True)
    assert 'The analyzed file is no longer available' in resp.get_data(as_text=True)


def test_analyze_requires_tournament(admin_client):
    resp = admin_client.post('/admin/import/roster/analyze', data={
        'file': csv_file('Player\nA B\n'),
    }, content_type='multipart/form-data', follow_redirects=True)
    assert 'Tournament ID is required.' in resp.get_data(as_text=True)


def test_ranking_single_step(admin_client, session, tournament):
    resp = admin_client.post('/admin/import/ranking', data={
        'tournament_id': tournament.id,
        'gender_sel': 'M',
        'delimiter': ';',
        'file': csv_file('position;athlete_display;event;club\n1;Ahmet Yılmaz;Singles;BŞB\n2;A / B;Doubles;\n0;Skip;;\n'),
    }, content_type='multipart/form-data', follow_redirects=True)
    assert 'Ranking import OK · 2 rows' in resp.get_data(as_text=True)
    rows = session.query(RankingEntry).order_by(RankingEntry.position).all()
    assert [r.athlete_display for r in rows] == ['Ahmet Yılmaz', 'A / B']
    assert rows[0].gender == 'M'


def test_media_single_step_xlsx(admin_client, session, tournament):
    upload = xlsx_file({'Media': [
        ['type', 'url', 'caption', 'credit', 'is_cover', 'event', 'created_at'],
        ['image', 'https://img/1.jpg', 'Podium', 'Org', True, 'Singles', '2025-09-01 18:00'],
        ['video', 'https://vid/2', None, None, 'no', None, None],
        ['image', None, 'No url', None, None, None, None],
    ]})
    resp = admin_client.post('/admin/import/media', data={
        'tournament_id': tournament.id,
        'file': upload,
    }, content_type='multipart/form-data', follow_redirects=True)
    assert 'Media import OK · 2 rows' in resp.get_data(as_text=True)
    cover = session.query(MediaItem).filter_by(is_cover=True).one()
    assert cover.caption == 'Podium'
    assert cover.created_at.year == 2025
    assert session.query(MediaItem).filter_by(type='video').count() == 1


def test_unknown_kind_is_404(admin_client):
    assert admin_client.post('/admin/import/players', data={}).status_code == 404
    assert admin_client.post('/admin/import/ranking/analyze', data={}).status_code == 404


def test_template_download(admin_client):
    resp = admin_client.get('/admin/import/templates/roster.xlsx')
    assert resp.status_code == 200
    assert 'attachment; filename=Roster.xlsx' == resp.headers['Content-Disposition']
    ws = load_workbook(io.BytesIO(resp.data)).active
    assert ws['A1'].value == 'full_name'
    assert admin_client.get('/admin/import/templates/unknown.xlsx').status_code == 404


def test_commit_with_fresh_file_ignores_bad_upload_id(admin_client, session, tournament):
    resp = admin_client.post('/admin/import/roster', data={
        'tournament_id': tournament.id,
        'gender_sel': 'F',
        'upload_id': 'not-a-staged-id',
        'map_full': 'Player',
        'file': csv_file('Player\nZeynep Kurt\n'),
    }, content_type='multipart/form-data')
    assert resp.status_code == 302
    assert 'Roster import OK · 1 rows' in admin_client.get(resp.headers['Location']).get_data(as_text=True)
    assert session.query(RosterEntry).one().last_name == 'Kurt'


def test_commit_file_replaces_analyzed_upload(admin_client, app, session, tournament):
    upload_id = analyze(admin_client, 'roster', tournament.id, csv_file('Player\nAhmet Yılmaz\nMehmet Kaya\n'))
    html = admin_client.get(f'/admin/import?tid={tournament.id}&prep_roster={upload_id}').get_data(as_text=True)
    assert 'Replace file (optional)' in html

    resp = admin_client.post('/admin/import/roster', data={
        'tournament_id': tournament.id,
        'gender_sel': 'F',
        'upload_id': upload_id,
        'map_full': 'Player',
        'file': csv_file('Player\nZeynep Kurt\n', 'other.csv'),
    }, content_type='multipart/form-data', follow_redirects=True)
    assert 'Roster import OK · 1 rows' in resp.get_data(as_text=True)
    assert [e.full_name for e in session.query(RosterEntry).all()] == ['Zeynep Kurt']
    assert os.listdir(app.config['IMPORT_STAGING_DIR']) == []


def test_failure_in_later_chunk_saves_nothing(admin_client, app, session, tournament):
    app.config['IMPORT_CHUNK_SIZE'] = 1

    def reject_second(mapper, connection, target):
        if target.position == 2:
            raise ValueError('position 2 rejected')

    event.listen(RankingEntry, 'before_insert', reject_second)
    try:
        resp = admin_client.post('/admin/import/ranking', data={
            'tournament_id': tournament.id,
            'file': csv_file('position,athlete_display\n1,Ahmet Yılmaz\n2,Mehmet Kaya\n3,Emre Demir\n'),
        }, content_type='multipart/form-data', follow_redirects=True)
    finally:
        event.remove(RankingEntry, 'before_insert', reject_second)

    assert 'Database error, nothing was saved: position 2 rejected' in resp.get_data(as_text=True)
    assert session.query(RankingEntry).count() == 0
    assert session.query(SiteLog).filter_by(action='import_ranking', result='failure').count() == 1
